import json

import httpx
import respx

import agentstream_cli


def sse(*events):
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events)


def test_iter_sse_events_skips_noise():
    lines = ["", ": ping", "data: not-json", 'data: ["list"]', 'data: {"type": "done"}']
    assert list(agentstream_cli.iter_sse_events(iter(lines))) == [{"type": "done"}]


@respx.mock
def test_chat_follows_continuation_tokens(capsys):
    first = sse(
        {"type": "text-delta", "text": "Hello "},
        {"type": "continuation_signal", "continuationState": {"token": "tok-1"}, "message": "paused"},
        {"type": "done", "continued": True},
    )
    second = sse(
        {"type": "text-delta", "text": "world"},
        {"type": "usage", "creditsUsed": 3, "newBalance": 147},
        {"type": "done", "continued": False},
    )
    route = respx.post("http://api.test/api/chat").mock(
        side_effect=[
            httpx.Response(200, text=first, headers={"content-type": "text/event-stream"}),
            httpx.Response(200, text=second, headers={"content-type": "text/event-stream"}),
        ]
    )
    code = agentstream_cli.main(["--base-url", "http://api.test", "--user", "u1", "chat", "hi"])
    assert code == 0
    assert route.call_count == 2
    assert json.loads(route.calls[1].request.content) == {"continuation_token": "tok-1"}
    assert route.calls[0].request.headers["X-User-ID"] == "u1"
    out = capsys.readouterr().out
    assert "Hello world" in out
    assert "[usage] 3 credits, balance 147" in out


@respx.mock
def test_wallet_prints_budget(capsys):
    respx.get("http://api.test/api/wallet").mock(
        return_value=httpx.Response(
            200,
            json={
                "wallet": {"current_plan": "free", "credits_balance": 150},
                "model": "anthropic/claude-sonnet-4.5",
                "step_budget": {"max_steps": 3, "estimated_cost_per_step": 9.6},
                "requests": {"requests_used": 1, "requests_limit": 20},
            },
        )
    )
    assert agentstream_cli.main(["--base-url", "http://api.test", "wallet"]) == 0
    out = capsys.readouterr().out
    assert "Balance: 150 credits" in out
    assert "up to 3 steps" in out
