import argparse
import json
import sys
from typing import Dict, Iterator, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _identity_headers(args: argparse.Namespace) -> Dict[str, str]:
    headers = {"X-User-Id": args.user}
    if args.email:
        headers["X-User-Email"] = args.email
    if args.name:
        headers["X-User-Name"] = args.name
    return headers


def iter_sse_events(lines: Iterator[str]) -> Iterator[dict]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data:
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            continue


def _print_event(event: dict) -> Optional[int]:
    """Render one turn event; returns an exit code once the turn is over."""
    etype = event.get("type")
    if etype == "delta":
        sys.stdout.write(event.get("content") or "")
        sys.stdout.flush()
    elif etype == "function_result":
        print(f"\n[tool {event.get('name')}: {event.get('status')}]")
    elif etype == "saved":
        print(f"\n[image saved: {event.get('url')}]")
    elif etype == "error":
        print(f"\nError: {event.get('error')}")
        return 1
    elif etype == "done":
        print()
        if event.get("chat_id"):
            print(f"(chat {event['chat_id']})")
        return 0
    return None


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "chat_id": args.chat_id,
        "agent_id": args.agent_id,
        "messages": [{"role": "user", "content": args.message}],
    }
    with httpx.Client(timeout=httpx.Timeout(args.timeout, connect=10.0)) as client:
        with client.stream(
            "POST",
            _join_url(base, "/api/chat"),
            json=payload,
            headers=_identity_headers(args),
        ) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Chat failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for event in iter_sse_events(resp.iter_lines()):
                code = _print_event(event)
                if code is not None:
                    return code
    print("\nStream ended without a final event.")
    return 1


def run_image(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "prompt": args.prompt,
        "size": args.size,
        "quality": args.quality,
        "output_format": args.format,
    }
    if args.models:
        payload["models"] = args.models
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, "/api/images/generate"),
            json=payload,
            headers=_identity_headers(args),
            timeout=args.timeout,
        )
        data = resp.json()
        if resp.status_code >= 400:
            detail = data.get("detail") if isinstance(data, dict) else data
            print(f"Image generation failed: HTTP {resp.status_code}")
            if isinstance(detail, dict):
                print(detail.get("error"))
                for failure in detail.get("failed_models") or []:
                    print(f"- {failure.get('model')}: {failure.get('classification')} ({failure.get('error')})")
            else:
                print(detail)
            return 1
    print(f"Model: {data.get('model')}")
    for failure in data.get("failed_models") or []:
        print(f"- skipped {failure.get('model')}: {failure.get('classification')}")
    print(f"URL: {data.get('url')}")
    if data.get("revised_prompt"):
        print(f"Revised prompt: {data['revised_prompt']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Workchat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--user", default="cli-user", help="Value sent as X-User-Id")
    parser.add_argument("--email", default=None, help="Value sent as X-User-Email")
    parser.add_argument("--name", default=None, help="Value sent as X-User-Name")
    parser.add_argument("--timeout", type=float, default=300, help="Request timeout in seconds")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send one message and stream the reply")
    chat.add_argument("message", help="Message text")
    chat.add_argument("--chat-id", default=None, help="Continue an existing chat")
    chat.add_argument("--agent-id", default=None, help="Route the turn through an agent")

    image = subparsers.add_parser("image", help="Generate an image through the model cascade")
    image.add_argument("prompt", help="Image prompt")
    image.add_argument("--size", default="auto", help="auto, square, landscape, portrait or WxH")
    image.add_argument("--quality", default="auto", choices=["auto", "low", "medium", "high"])
    image.add_argument("--format", default="png", choices=["png", "jpeg", "webp"])
    image.add_argument("--models", nargs="*", help="Override the model order")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "image":
        return run_image(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
