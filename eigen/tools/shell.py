import asyncio
import logging

from .types import ToolCallRequest, ToolCallResult

logger = logging.getLogger("uvicorn.error")

TIMEOUT_S = 30
MAX_OUTPUT_SIZE = 100_000
DANGEROUS_PATTERNS = (
    "rm -rf /",
    "rm -rf ~",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "chmod -R 777 /",
    "chown -R",
    "> /dev/sd",
    "curl | sh",
    "curl | bash",
    "wget | sh",
    "wget | bash",
)


def find_dangerous_pattern(command: str) -> str:
    lowered = command.lower()
    for pattern in DANGEROUS_PATTERNS:
        if pattern.lower() in lowered:
            return pattern
    return ""


def format_output(stdout: str, stderr: str, exit_code: int) -> str:
    output = stdout
    if stderr:
        if output:
            output += "\n\n--- stderr ---\n"
        output += stderr
    if not output:
        output = f"Command completed with exit code {exit_code}"
    elif exit_code != 0:
        output += f"\n\nExit code: {exit_code}"
    if len(output) > MAX_OUTPUT_SIZE:
        output = output[:MAX_OUTPUT_SIZE] + "\n\n... (output truncated)"
    return output


async def execute(request: ToolCallRequest, timeout_s: float = TIMEOUT_S) -> ToolCallResult:
    command = request.get_str("command")
    if command is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: command")
    blocked = find_dangerous_pattern(command)
    if blocked:
        return ToolCallResult.fail(request.call_id, f"Blocked potentially dangerous command pattern: {blocked}")

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to spawn command: {exc}")
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return ToolCallResult.fail(request.call_id, f"Command timed out after {int(timeout_s)} seconds")

    exit_code = proc.returncode if proc.returncode is not None else -1
    logger.info("Shell tool exited with %s: %s", exit_code, command[:200])
    # a non-zero exit is still a result the model should see
    return ToolCallResult.ok(
        request.call_id,
        format_output(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            exit_code,
        ),
    )
