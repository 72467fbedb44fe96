import json

import httpx
import pytest
import respx
from httpx import Response

from agentstream.config import EndpointConfig
from agentstream.errors import ModelLogicError, ProviderError, classify_outcome
from agentstream.llm import GatewayClient

ENDPOINT = EndpointConfig(base_url="http://gateway.test/v1", api_key="secret")
URL = "http://gateway.test/v1/chat/completions"


def sse_body(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


async def collect(client: GatewayClient, **kwargs):
    return [chunk async for chunk in client.stream_chat(ENDPOINT, "test-model", **kwargs)]


@pytest.mark.asyncio
async def test_stream_chat_payload_shape_and_chunks():
    client = GatewayClient()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("authorization")
                body = sse_body(
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                    {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 2}},
                )
                return Response(200, content=body, headers={"content-type": "text/event-stream"})

            respx_mock.post(URL).mock(side_effect=handler)
            chunks = await collect(
                client,
                messages=[
                    {"role": "system", "content": "sys"},
                    {"role": "user", "content": "hi"},
                    {"role": "user", "content": "   "},
                    {"role": "narrator", "content": "dropped"},
                ],
                tools=[{"type": "function", "function": {"name": "read_file", "parameters": {}}}],
                temperature=0.3,
            )
        assert [c["choices"][0]["delta"]["content"] for c in chunks[:2]] == ["Hel", "lo"]
        assert chunks[2]["usage"]["prompt_tokens"] == 12
        payload = captured["json"]
        assert payload["model"] == "test-model"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["temperature"] == 0.3
        assert payload["tools"][0]["function"]["name"] == "read_file"
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]
        assert captured["auth"] == "Bearer secret"
    finally:
        await client.close()


def test_sanitize_keeps_tool_call_turns():
    client = GatewayClient()
    cleaned = client._sanitize_messages(
        [
            {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function"}]},
            {"role": "tool", "content": "{\"success\": true}", "tool_call_id": "c1"},
            {"role": "assistant", "content": "", "reasoning": "thinking"},
        ]
    )
    assert cleaned == [
        {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function"}]},
        {"role": "tool", "content": "{\"success\": true}", "tool_call_id": "c1"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 429, 500, 503])
async def test_provider_statuses_raise_provider_error(status):
    client = GatewayClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(
                return_value=Response(status, json={"error": {"message": "upstream overloaded"}})
            )
            with pytest.raises(ProviderError) as info:
                await collect(client, messages=[{"role": "user", "content": "hi"}])
        assert info.value.status_code == status
        assert "upstream overloaded" in str(info.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_bad_request_is_not_a_provider_error():
    client = GatewayClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(400, json={"error": "context too long"}))
            with pytest.raises(ModelLogicError):
                await collect(client, messages=[{"role": "user", "content": "hi"}])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_malformed_chunk_raises_provider_error():
    client = GatewayClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(
                return_value=Response(
                    200,
                    content=b"data: {\"choices\": [{\"delta\": {\"content\": \"ok\"}}]}\n\ndata: {not json\n\n",
                    headers={"content-type": "text/event-stream"},
                )
            )
            seen = []
            with pytest.raises(ProviderError):
                async for chunk in client.stream_chat(ENDPOINT, "test-model", [{"role": "user", "content": "hi"}]):
                    seen.append(chunk)
        assert len(seen) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_failure_raises_provider_error():
    client = GatewayClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(ProviderError) as info:
                await collect(client, messages=[{"role": "user", "content": "hi"}])
        assert "ConnectError" in str(info.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_messages_rejected_before_request():
    client = GatewayClient()
    try:
        with pytest.raises(ModelLogicError):
            await collect(client, messages=[{"role": "user", "content": ""}])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_corrupt_body_raises_provider_error():
    client = GatewayClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(
                return_value=Response(
                    200,
                    stream=httpx.ByteStream(b"data: this is not gzip"),
                    headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
                )
            )
            with pytest.raises(ProviderError) as info:
                await collect(client, messages=[{"role": "user", "content": "hi"}])
        assert "DecodingError" in str(info.value)
        assert classify_outcome(info.value) == "providerError"
    finally:
        await client.close()
