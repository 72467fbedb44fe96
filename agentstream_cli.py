import argparse
import json
import os
import sys
from typing import Any, Dict, Iterator, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
MAX_CONTINUATIONS = 10


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(user_id: str) -> Dict[str, str]:
    return {"X-User-ID": user_id}


def iter_sse_events(lines: Iterator[str]) -> Iterator[Dict[str, Any]]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:"):].strip()
        if not chunk:
            continue
        try:
            event = json.loads(chunk)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


def _stream_once(client: httpx.Client, base: str, user_id: str, payload: dict) -> Optional[str]:
    """Print one response. Returns the continuation token when the server paused."""
    token: Optional[str] = None
    with client.stream(
        "POST",
        _join_url(base, "/api/chat"),
        json=payload,
        headers=_headers(user_id),
        timeout=httpx.Timeout(10.0, read=None),
    ) as resp:
        if resp.status_code >= 400:
            resp.read()
            try:
                detail = resp.json().get("detail")
            except Exception:
                detail = resp.text
            print(f"Request failed: HTTP {resp.status_code}: {detail}", file=sys.stderr)
            raise SystemExit(1)
        for event in iter_sse_events(resp.iter_lines()):
            kind = event.get("type")
            if kind == "text-delta":
                print(event.get("text", ""), end="", flush=True)
            elif kind == "tool-call":
                print(f"\n[tool] {event.get('toolName')} {json.dumps(event.get('args') or {})}", flush=True)
            elif kind == "provider_fallback":
                print(f"\n[notice] {event.get('fallbackMessage')}", flush=True)
            elif kind == "continuation_signal":
                token = (event.get("continuationState") or {}).get("token")
            elif kind == "error":
                print(f"\n[error] {event.get('error')}", file=sys.stderr, flush=True)
            elif kind == "usage":
                print(
                    f"\n[usage] {event.get('creditsUsed')} credits, balance {event.get('newBalance')}",
                    flush=True,
                )
    return token


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: dict = {"messages": [{"role": "user", "content": args.prompt}]}
    if args.model:
        payload["model"] = args.model
    if args.project:
        payload["project_id"] = args.project
    with httpx.Client() as client:
        token = _stream_once(client, base, args.user, payload)
        follow_ups = 0
        while token and follow_ups < MAX_CONTINUATIONS:
            follow_ups += 1
            token = _stream_once(client, base, args.user, {"continuation_token": token})
    print()
    if token:
        print(f"Stopped after {MAX_CONTINUATIONS} continuations; resume with token {token}")
        return 1
    return 0


def run_wallet(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    params = {"model": args.model} if args.model else None
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/wallet"), params=params, headers=_headers(args.user), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch wallet: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    wallet = data.get("wallet") or {}
    budget = data.get("step_budget") or {}
    requests = data.get("requests") or {}
    print(f"Plan: {wallet.get('current_plan')}  Balance: {wallet.get('credits_balance')} credits")
    print(f"Requests this month: {requests.get('requests_used')}/{requests.get('requests_limit')}")
    print(
        f"{data.get('model')}: up to {budget.get('max_steps')} steps "
        f"(~{budget.get('estimated_cost_per_step', 0):.2f} credits per step)"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AgentStream CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--user", default=os.getenv("AGENTSTREAM_USER", "local-user"), help="User id")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a prompt and stream the answer")
    chat.add_argument("prompt", help="Prompt text")
    chat.add_argument("--model", help="Model id")
    chat.add_argument("--project", help="Project id for file tools")

    wallet = subparsers.add_parser("wallet", help="Show balance and step budget")
    wallet.add_argument("--model", help="Model id for the step budget")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "wallet":
        return run_wallet(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
