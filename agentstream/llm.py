import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .config import EndpointConfig
from .errors import ModelLogicError, ProviderError, is_provider_status

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
PASSTHROUGH_FIELDS = ("tool_calls", "tool_call_id", "name")


class GatewayClient:
    """Streaming client for OpenAI-compatible chat completion endpoints."""

    def __init__(self, timeout: float = 120.0):
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=15.0))

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            extra = {key: msg[key] for key in PASSTHROUGH_FIELDS if msg.get(key)}
            cleaned_content: Any
            if content is None or (isinstance(content, str) and not content.strip()):
                # Assistant turns that only call tools carry no text.
                if role != "assistant" or not extra.get("tool_calls"):
                    continue
                cleaned_content = None
            elif isinstance(content, str):
                cleaned_content = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                cleaned_content = cleaned_items
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content, **extra})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                error = data.get("error")
                if isinstance(error, dict) and error.get("message"):
                    return str(error["message"])
                if isinstance(error, str) and error:
                    return error
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def _headers(self, endpoint: EndpointConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return headers

    async def stream_chat(
        self,
        endpoint: EndpointConfig,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.5,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield decoded chat.completion.chunk objects for one model call."""
        url = f"{endpoint.base_url.rstrip('/')}/chat/completions"
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ModelLogicError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = tools
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers(endpoint)) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    detail = self._extract_error_detail(resp)
                    message = f"{model} returned HTTP {resp.status_code}: {detail}"
                    if is_provider_status(resp.status_code):
                        raise ProviderError(message, status_code=resp.status_code)
                    raise ModelLogicError(message)
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if not chunk:
                        continue
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError as exc:
                        raise ProviderError(f"Malformed chunk from {model}: {chunk[:200]}") from exc
                    if not isinstance(data, dict):
                        raise ProviderError(f"Malformed chunk from {model}: {chunk[:200]}")
                    error = data.get("error")
                    if error:
                        detail = error.get("message") if isinstance(error, dict) else str(error)
                        raise ProviderError(f"{model} stream error: {detail}")
                    yield data
        except httpx.RequestError as exc:
            raise ProviderError(f"{model} request failed: {exc.__class__.__name__}: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()
