import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentstream.chat_service import RESUME_INSTRUCTION, SYSTEM_PROMPT, ChatRejected
from agentstream.deadline import DeadlineLimits
from agentstream.errors import ProviderError
from agentstream.schemas import ChatRequest
from tests.conftest import FALLBACK_MODEL, FALLBACK_PROVIDER_MODEL, PRIMARY_MODEL
from tests.fakes import (
    Advance,
    FakeClock,
    FakeGatewayClient,
    Hang,
    finish_chunk,
    text_chunk,
    text_step,
    tool_call_chunk,
    usage_chunk,
)

USER = {"X-User-ID": "user-1"}
HELLO = {"messages": [{"role": "user", "content": "build a todo app"}]}


@asynccontextmanager
async def serve(app):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client


def sse_events(res):
    return [json.loads(line[len("data: "):]) for line in res.text.splitlines() if line.startswith("data: ")]


async def usage_rows(app, user_id="user-1"):
    return await app.state.db.fetchall(
        "SELECT model, status, prompt_tokens, completion_tokens, steps_count, metadata_json "
        "FROM usage_logs WHERE user_id=? ORDER BY id",
        (user_id,),
    )


@pytest.mark.asyncio
async def test_chat_streams_events_and_bills_once(client):
    res = await client.post("/api/chat", json=HELLO, headers=USER)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    events = sse_events(res)
    assert [e["type"] for e in events] == ["text-delta", "step-finish", "finish", "usage", "done"]
    done = events[-1]
    assert done["requestId"] == res.headers["x-request-id"]
    assert done["outcome"] == "success"
    assert done["continued"] is False
    assert done["fallbackUsed"] is False
    usage = events[-2]
    assert (usage["inputTokens"], usage["outputTokens"]) == (100, 20)

    sent = client.fake_gateway.calls[0]
    assert sent["base_url"] == "http://gateway.test/v1"
    assert sent["model"] == PRIMARY_MODEL
    assert sent["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}

    rows = await usage_rows(client.app)
    assert len(rows) == 1
    assert (rows[0]["status"], rows[0]["prompt_tokens"], rows[0]["completion_tokens"]) == ("success", 100, 20)
    assert json.loads(rows[0]["metadata_json"])["usage_source"] == "authoritative"


@pytest.mark.asyncio
async def test_chat_requires_user_header(client):
    res = await client.post("/api/chat", json=HELLO)
    assert res.status_code == 401
    assert client.fake_gateway.calls == []


@pytest.mark.asyncio
async def test_chat_requires_user_message(client):
    res = await client.post("/api/chat", json={"messages": [{"role": "system", "content": "x"}]}, headers=USER)
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_empty_wallet_is_rejected_before_model_call(client):
    await client.app.state.ledger.get_wallet("user-1")
    await client.app.state.db.execute("UPDATE wallets SET credits_balance=0 WHERE user_id=?", ("user-1",))
    res = await client.post("/api/chat", json=HELLO, headers=USER)
    assert res.status_code == 402
    assert client.fake_gateway.calls == []
    assert await usage_rows(client.app) == []


@pytest.mark.asyncio
async def test_monthly_request_limit_returns_429(client):
    await client.app.state.ledger.get_wallet("user-1")
    await client.app.state.db.execute("UPDATE wallets SET requests_this_month=20 WHERE user_id=?", ("user-1",))
    res = await client.post("/api/chat", json=HELLO, headers=USER)
    assert res.status_code == 429
    assert "Upgrade" in res.json()["detail"]
    assert client.fake_gateway.calls == []


@pytest.mark.asyncio
async def test_continuation_round_trip_bills_whole_chain_once(app_factory):
    clock = FakeClock()
    gateway = FakeGatewayClient(clock).script(
        PRIMARY_MODEL,
        [
            tool_call_chunk("call_1", "write_file", {"path": "README.md", "content": "# Todo"}),
            finish_chunk("tool_calls"),
            usage_chunk(1000, 100),
        ],
        [Advance(231_000), text_chunk("late")],
        text_step("All done.", 500, 50),
    )
    app, _, _ = app_factory(fake_gateway=gateway, clock=clock)
    async with serve(app) as client:
        first = sse_events(
            await client.post("/api/chat", json={**HELLO, "project_id": "proj-1"}, headers=USER)
        )
        assert [e["type"] for e in first] == ["tool-call", "tool-result", "step-finish", "continuation_signal", "done"]
        assert first[-1]["continued"] is True
        assert await usage_rows(app) == []
        state = first[3]["continuationState"]
        token = state["token"]
        assert state["project_files"] == {"README.md": "# Todo"}

        app.state.project_store.delete("proj-1", "README.md")
        second_res = await client.post("/api/chat", json={"continuation_token": token}, headers=USER)
        assert second_res.status_code == 200
        second = sse_events(second_res)
        assert [e["type"] for e in second] == ["text-delta", "step-finish", "finish", "usage", "done"]
        usage = second[3]
        assert (usage["inputTokens"], usage["outputTokens"]) == (1500, 150)
        assert app.state.project_store.get("proj-1", "README.md") == "# Todo"

        resumed = gateway.calls[-1]["messages"]
        assert resumed[-1] == {"role": "user", "content": RESUME_INSTRUCTION}
        assert "write_file README.md" in resumed[-2]["content"]

        rows = await usage_rows(app)
        assert len(rows) == 1
        assert rows[0]["steps_count"] == 2
        assert json.loads(rows[0]["metadata_json"])["continuation_chain"] is True

        reused = await client.post("/api/chat", json={"continuation_token": token}, headers=USER)
        assert reused.status_code == 409


@pytest.mark.asyncio
async def test_continuation_token_checks(app_factory):
    clock = FakeClock()
    gateway = FakeGatewayClient(clock).script(PRIMARY_MODEL, [text_chunk("a"), Advance(240_000), text_chunk("b")])
    app, _, _ = app_factory(fake_gateway=gateway, clock=clock)
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        token = events[-2]["continuationState"]["token"]

        other = await client.post("/api/chat", json={"continuation_token": token}, headers={"X-User-ID": "user-2"})
        assert other.status_code == 403
        unknown = await client.post("/api/chat", json={"continuation_token": "missing"}, headers=USER)
        assert unknown.status_code == 404
        stored = await app.state.continuations.get(token)
        assert stored[2] == "pending"


@pytest.mark.asyncio
async def test_fallback_through_api_is_billed_to_fallback_model(app_factory):
    gateway = FakeGatewayClient()
    gateway.script(PRIMARY_MODEL, [ProviderError("service unavailable", status_code=503)])
    gateway.script(FALLBACK_PROVIDER_MODEL, text_step("hi from fallback", 80, 8))
    app, _, _ = app_factory(fake_gateway=gateway)
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        assert events[0]["type"] == "provider_fallback"
        assert events[-1]["fallbackUsed"] is True
        assert events[-1]["outcome"] == "success"
        rows = await usage_rows(app)
        assert rows[0]["model"] == FALLBACK_MODEL
        assert json.loads(rows[0]["metadata_json"])["fallback_used"] is True


@pytest.mark.asyncio
async def test_provider_failure_after_fallback_reports_error(app_factory):
    gateway = FakeGatewayClient()
    gateway.script(PRIMARY_MODEL, [ProviderError("bad gateway", status_code=502)])
    gateway.script(FALLBACK_PROVIDER_MODEL, [ProviderError("rate limited", status_code=429)])
    app, _, _ = app_factory(fake_gateway=gateway)
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        kinds = [e["type"] for e in events]
        assert kinds == ["provider_fallback", "error", "done"]
        assert events[1]["code"] == "provider_error"
        assert events[-1]["outcome"] == "error"
        assert await usage_rows(app) == []


@pytest.mark.asyncio
async def test_hard_timeout_ends_stream_with_timeout_error(app_factory):
    gateway = FakeGatewayClient().script(PRIMARY_MODEL, [text_chunk("partial"), Hang()])
    app, _, _ = app_factory(fake_gateway=gateway, limits=DeadlineLimits(hard_limit_ms=50))
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        kinds = [e["type"] for e in events]
        assert kinds == ["text-delta", "error", "usage", "done"]
        assert events[1]["code"] == "timeout"
        assert events[-1]["outcome"] == "error"
        rows = await usage_rows(app)
        assert rows[0]["status"] == "error"
        assert json.loads(rows[0]["metadata_json"])["usage_source"] == "estimated"


@pytest.mark.asyncio
async def test_client_disconnect_bills_partial_output(app_factory):
    gateway = FakeGatewayClient().script(PRIMARY_MODEL, [text_chunk("partial"), usage_chunk(0, 0), Hang()])
    app, _, _ = app_factory(fake_gateway=gateway)
    async with LifespanManager(app):
        service = app.state.chat_service
        session = await service.prepare(ChatRequest(**HELLO), "user-1")
        stream = service.start(session)
        events = stream.events()
        first = await events.__anext__()
        assert first["type"] == "text-delta"
        await events.aclose()
        await asyncio.wait_for(stream.task, timeout=5)
        assert session.client_aborted is True
        assert stream.cancel.client_disconnected
        rows = await usage_rows(app)
        assert len(rows) == 1
        assert rows[0]["status"] == "aborted"
        assert session.request_id not in app.state.chat_tasks


@pytest.mark.asyncio
async def test_stream_without_usage_report_is_billed_from_text_length(app_factory):
    gateway = FakeGatewayClient().script(PRIMARY_MODEL, [text_chunk("y" * 1200), finish_chunk("stop")])
    app, _, _ = app_factory(fake_gateway=gateway)
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        assert [e["type"] for e in events] == ["text-delta", "step-finish", "finish", "usage", "done"]
        assert events[3]["outputTokens"] == 300
        rows = await usage_rows(app)
        assert len(rows) == 1
        assert rows[0]["completion_tokens"] == 300
        assert json.loads(rows[0]["metadata_json"])["usage_source"] == "estimated"


@pytest.mark.asyncio
async def test_empty_stream_without_usage_report_is_not_billed(app_factory):
    gateway = FakeGatewayClient().script(PRIMARY_MODEL, [finish_chunk("stop")])
    app, _, _ = app_factory(fake_gateway=gateway)
    async with serve(app) as client:
        events = sse_events(await client.post("/api/chat", json=HELLO, headers=USER))
        assert "usage" not in [e["type"] for e in events]
        assert events[-1]["type"] == "done"
        assert await usage_rows(app) == []


@pytest.mark.asyncio
async def test_disconnect_after_continuation_saved_bills_now_and_claims_token(app_factory, monkeypatch):
    clock = FakeClock()
    gateway = FakeGatewayClient(clock).script(PRIMARY_MODEL, [text_chunk("a"), Advance(240_000), text_chunk("b")])
    app, _, _ = app_factory(fake_gateway=gateway, clock=clock)
    async with LifespanManager(app):
        service = app.state.chat_service
        store = app.state.continuations
        save = store.save
        holder = {}

        async def save_then_disconnect(state, deferred):
            await save(state, deferred)
            holder["stream"].close()

        monkeypatch.setattr(store, "save", save_then_disconnect)
        session = await service.prepare(ChatRequest(**HELLO), "user-1")
        stream = service.start(session)
        holder["stream"] = stream
        await asyncio.wait_for(stream.task, timeout=5)

        assert session.client_aborted is True
        token = session.continuation.token
        rows = await usage_rows(app)
        assert len(rows) == 1
        assert rows[0]["status"] == "aborted"
        assert (await store.get(token))[2] == "claimed"

        with pytest.raises(ChatRejected) as excinfo:
            await service.prepare(ChatRequest(continuation_token=token), "user-1")
        assert excinfo.value.status_code == 409
        assert len(await usage_rows(app)) == 1


@pytest.mark.asyncio
async def test_wallet_endpoint_reports_budget(client):
    res = await client.get("/api/wallet", headers=USER)
    assert res.status_code == 200
    data = res.json()
    assert data["wallet"]["credits_balance"] == 150
    assert data["wallet"]["can_purchase_credits"] is False
    assert data["model"] == PRIMARY_MODEL
    assert data["step_budget"]["max_steps"] == 3
    assert data["requests"]["allowed"] is True


@pytest.mark.asyncio
async def test_wallet_requires_user(client):
    res = await client.get("/api/wallet")
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_models_endpoint_marks_fallback(client):
    data = (await client.get("/api/models")).json()
    assert data["default_model"] == PRIMARY_MODEL
    assert data["fallback_model"] == FALLBACK_MODEL
    flagged = [m["id"] for m in data["models"] if m["fallback"]]
    assert flagged == [FALLBACK_MODEL]


@pytest.mark.asyncio
async def test_usage_endpoint_lists_recent_requests(client):
    await client.post("/api/chat", json=HELLO, headers=USER)
    data = (await client.get("/api/usage", headers=USER)).json()
    assert data["stats"]["total_requests"] == 1
    assert len(data["recent"]) == 1
