import argparse
import sys
import time
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _fail(action: str, resp: httpx.Response) -> int:
    try:
        detail = resp.json().get("detail")
    except Exception:
        detail = resp.text
    print(f"Failed to {action}: HTTP {resp.status_code} {detail or ''}".rstrip())
    return 1


def _print_models(models: List[dict]) -> None:
    if not models:
        print("No models in catalog.")
        return
    for model in models:
        marker = "*" if model.get("is_current") else " "
        status = model.get("download_status")
        if status == "downloading" and model.get("download_percent") is not None:
            status = f"downloading {model['download_percent']:.1f}%"
        print(f"{marker} {model.get('id'):<24} {status:<20} {model.get('name')}")


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/status"), timeout=10)
        if resp.status_code >= 400:
            return _fail("fetch status", resp)
        data = resp.json()
    state = "ready" if data.get("ready") else "not ready"
    print(f"Server {state}; model: {data.get('current_model_id') or '-'}")
    for model_id, percent in (data.get("downloads") or {}).items():
        print(f"Downloading {model_id}: {percent:.1f}%")
    return 0


def run_models_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            return _fail("list models", resp)
        _print_models(resp.json().get("models") or [])
    return 0


def run_models_switch(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/models/{args.model_id}/switch"), timeout=args.timeout)
        if resp.status_code >= 400:
            return _fail("switch model", resp)
    print(f"Switched to {args.model_id}.")
    return 0


def _poll_download(client: httpx.Client, base: str, model_id: str, timeout_s: int) -> int:
    start = time.time()
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, "/api/status"), timeout=10)
        resp.raise_for_status()
        downloads = resp.json().get("downloads") or {}
        if model_id not in downloads:
            print(f"Download of {model_id} finished.")
            return 0
        print(f"{model_id}: {downloads[model_id]:.1f}%")
        time.sleep(2)
    print("Timed out waiting for download to finish.")
    return 1


def run_models_download(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/models/{args.model_id}/download"), timeout=10)
        if resp.status_code >= 400:
            return _fail("start download", resp)
        print(f"Downloading {args.model_id}.")
        if args.wait:
            return _poll_download(client, args.base_url, args.model_id, args.timeout)
    return 0


def run_models_cancel(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/models/{args.model_id}/download/cancel"), timeout=10)
        if resp.status_code >= 400:
            return _fail("cancel download", resp)
        cancelled = resp.json().get("cancelled")
    print("Cancelled." if cancelled else "No active download.")
    return 0


def run_models_delete(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.delete(_join_url(args.base_url, f"/api/models/{args.model_id}"), timeout=10)
        if resp.status_code >= 400:
            return _fail("delete model", resp)
    print(f"Deleted {args.model_id}.")
    return 0


def run_chat_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/chats"), timeout=10)
        if resp.status_code >= 400:
            return _fail("list chats", resp)
        for chat in resp.json().get("chats") or []:
            print(f"{chat.get('id')}  {chat.get('title')}")
    return 0


def run_chat_send(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        chat_id = args.chat_id
        if not chat_id:
            resp = client.post(_join_url(args.base_url, "/api/chats"), timeout=10)
            if resp.status_code >= 400:
                return _fail("create chat", resp)
            chat_id = resp.json()["chat_id"]
            print(f"Chat {chat_id}")
        resp = client.post(
            _join_url(args.base_url, f"/api/chats/{chat_id}/messages"),
            json={"prompt": args.prompt},
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            return _fail("send message", resp)
        answer = resp.json()
    if args.show_reasoning and answer.get("reasoning_text"):
        print(answer["reasoning_text"])
        print("---")
    print(answer.get("visible_text") or "")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Eigen CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show server and download status")

    models = subparsers.add_parser("models", help="Model management")
    models_sub = models.add_subparsers(dest="models_cmd")
    models_sub.add_parser("list", help="List catalog models")
    switch = models_sub.add_parser("switch", help="Load a downloaded model")
    switch.add_argument("model_id")
    switch.add_argument("--timeout", type=int, default=180, help="Max wait seconds")
    download = models_sub.add_parser("download", help="Download a catalog model")
    download.add_argument("model_id")
    download.add_argument("--wait", action="store_true", help="Wait for the download to finish")
    download.add_argument("--timeout", type=int, default=3600, help="Max wait seconds")
    cancel = models_sub.add_parser("cancel", help="Cancel a running download")
    cancel.add_argument("model_id")
    delete = models_sub.add_parser("delete", help="Delete a downloaded model")
    delete.add_argument("model_id")

    chat = subparsers.add_parser("chat", help="Chats")
    chat_sub = chat.add_subparsers(dest="chat_cmd")
    chat_sub.add_parser("list", help="List recent chats")
    send = chat_sub.add_parser("send", help="Send a prompt and print the answer")
    send.add_argument("prompt")
    send.add_argument("--chat-id", help="Existing chat (a new chat is created otherwise)")
    send.add_argument("--show-reasoning", action="store_true")
    send.add_argument("--timeout", type=int, default=600, help="Max wait seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {
        ("status", None): run_status,
        ("models", "list"): run_models_list,
        ("models", "switch"): run_models_switch,
        ("models", "download"): run_models_download,
        ("models", "cancel"): run_models_cancel,
        ("models", "delete"): run_models_delete,
        ("chat", "list"): run_chat_list,
        ("chat", "send"): run_chat_send,
    }
    sub = getattr(args, "models_cmd", None) or getattr(args, "chat_cmd", None)
    handler = handlers.get((args.command, sub))
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
