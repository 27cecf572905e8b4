import os
from pathlib import Path

from .types import ToolCallRequest, ToolCallResult

FORBIDDEN_PATHS = (
    "/etc/passwd",
    "/etc/shadow",
    "/etc/sudoers",
    ".ssh/",
    ".gnupg/",
    ".aws/credentials",
    ".env",
)
MAX_READ_BYTES = 1_000_000


def format_size(size: int) -> str:
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if size >= gb:
        return f"{size / gb:.1f} GB"
    if size >= mb:
        return f"{size / mb:.1f} MB"
    if size >= kb:
        return f"{size / kb:.1f} KB"
    return f"{size} B"


def expand_path(raw: str) -> str:
    if raw.startswith("~/") or raw == "~":
        return os.path.expanduser(raw)
    return raw


def is_forbidden(path_str: str) -> bool:
    lowered = path_str.lower()
    return any(pattern in lowered for pattern in FORBIDDEN_PATHS)


def _read(call_id: str, path: Path) -> ToolCallResult:
    if not path.exists():
        return ToolCallResult.fail(call_id, f"File not found: {path}")
    if not path.is_file():
        return ToolCallResult.fail(call_id, f"Not a file: {path}")
    try:
        if path.stat().st_size > MAX_READ_BYTES:
            return ToolCallResult.fail(call_id, "File too large (>1MB). Consider reading a smaller file.")
        return ToolCallResult.ok(call_id, path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        return ToolCallResult.fail(call_id, f"Failed to read file: {exc}")


def _write(call_id: str, path: Path, content: str) -> ToolCallResult:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        return ToolCallResult.fail(call_id, f"Failed to write file: {exc}")
    return ToolCallResult.ok(call_id, f"Successfully wrote {len(content.encode('utf-8'))} bytes to {path}")


def _list(call_id: str, path: Path) -> ToolCallResult:
    if not path.exists():
        return ToolCallResult.fail(call_id, f"Directory not found: {path}")
    if not path.is_dir():
        return ToolCallResult.fail(call_id, f"Not a directory: {path}")
    try:
        entries = list(path.iterdir())
    except OSError as exc:
        return ToolCallResult.fail(call_id, f"Failed to read directory: {exc}")
    # directories first, then case-insensitive by name
    entries.sort(key=lambda p: (not p.is_dir(), p.name.lower()))
    lines = [f"Contents of {path}:", ""]
    for entry in entries:
        if entry.is_dir():
            lines.append(f"[dir]  {entry.name}/")
        else:
            try:
                size = entry.stat().st_size
            except OSError:
                size = 0
            lines.append(f"[file] {entry.name} ({format_size(size)})")
    return ToolCallResult.ok(call_id, "\n".join(lines) + "\n")


def execute(request: ToolCallRequest) -> ToolCallResult:
    operation = request.get_str("operation")
    if operation is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: operation")
    raw_path = request.get_str("path")
    if raw_path is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: path")
    path_str = expand_path(raw_path)
    if is_forbidden(path_str):
        return ToolCallResult.fail(request.call_id, f"Access denied: cannot access sensitive path '{path_str}'")
    path = Path(path_str)
    if operation == "read":
        return _read(request.call_id, path)
    if operation == "write":
        return _write(request.call_id, path, request.get_str("content") or "")
    if operation == "list":
        return _list(request.call_id, path)
    return ToolCallResult.fail(
        request.call_id,
        f"Unknown operation: {operation}. Use 'read', 'write', or 'list'",
    )
