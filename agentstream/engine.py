import asyncio
import json
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from .config import EndpointConfig
from .errors import ModelLogicError
from .schemas import Usage
from .tools import ToolRegistry

# Returns the system note to inject before a model call, if any.
PrepareStep = Callable[[int], Optional[str]]


def _usage_from_chunk(usage: Dict[str, Any]) -> Usage:
    return Usage(
        input_tokens=int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
    )


class EngineRun:
    """One agent invocation against one model.

    events() is single-use. total_usage resolves with the summed step usage when the
    stream reaches its end (None when no step reported usage) and is cancelled when
    the stream fails or is abandoned.
    """

    def __init__(
        self,
        client: Any,
        endpoint: EndpointConfig,
        model: str,
        messages: List[Dict[str, Any]],
        tools: ToolRegistry,
        max_steps: int,
        temperature: float,
        prepare_step: Optional[PrepareStep] = None,
    ):
        self.client = client
        self.endpoint = endpoint
        self.model = model
        self.messages = list(messages)
        self.tools = tools
        self.max_steps = max_steps
        self.temperature = temperature
        self.prepare_step = prepare_step
        self.total_usage: asyncio.Future = asyncio.get_running_loop().create_future()

    async def events(self) -> AsyncGenerator[Dict[str, Any], None]:
        drive = self._drive()
        try:
            async for event in drive:
                yield event
        finally:
            if not self.total_usage.done():
                self.total_usage.cancel()
            await drive.aclose()

    async def _drive(self) -> AsyncGenerator[Dict[str, Any], None]:
        messages = list(self.messages)
        tool_schemas = self.tools.schemas() if len(self.tools) else None
        total: Optional[Usage] = None
        finish_reason = "max_steps"
        for step in range(self.max_steps):
            note = self.prepare_step(step) if self.prepare_step else None
            step_messages = messages + [{"role": "system", "content": note}] if note else messages
            text_parts: List[str] = []
            pending: Dict[int, Dict[str, str]] = {}
            step_usage: Optional[Usage] = None
            step_reason: Optional[str] = None
            stream = self.client.stream_chat(
                self.endpoint,
                self.model,
                step_messages,
                tools=tool_schemas,
                temperature=self.temperature,
            )
            try:
                async for chunk in stream:
                    if chunk.get("usage"):
                        step_usage = _usage_from_chunk(chunk["usage"])
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0] or {}
                    delta = choice.get("delta") or {}
                    reasoning = delta.get("reasoning") or delta.get("reasoning_content")
                    if reasoning:
                        yield {"type": "reasoning-delta", "text": reasoning}
                    content = delta.get("content")
                    if content:
                        text_parts.append(content)
                        yield {"type": "text-delta", "text": content}
                    for call in delta.get("tool_calls") or []:
                        slot = pending.setdefault(int(call.get("index") or 0), {"id": "", "name": "", "arguments": ""})
                        if call.get("id"):
                            slot["id"] = call["id"]
                        function = call.get("function") or {}
                        if function.get("name"):
                            slot["name"] = function["name"]
                        if function.get("arguments"):
                            slot["arguments"] += function["arguments"]
                    if choice.get("finish_reason"):
                        step_reason = choice["finish_reason"]
            finally:
                await stream.aclose()

            calls = [pending[index] for index in sorted(pending)]
            for call in calls:
                if not call["id"]:
                    call["id"] = f"call_{uuid.uuid4().hex[:12]}"
                if not call["name"]:
                    raise ModelLogicError("Model emitted a tool call without a name")
            assistant: Dict[str, Any] = {"role": "assistant", "content": "".join(text_parts) or None}
            if calls:
                assistant["tool_calls"] = [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
                    }
                    for call in calls
                ]
            messages.append(assistant)

            # Tools run one at a time, in the order the model asked for them.
            for call in calls:
                try:
                    args = json.loads(call["arguments"] or "{}")
                except json.JSONDecodeError as exc:
                    raise ModelLogicError(f"Invalid arguments for tool {call['name']}: {exc}") from exc
                if not isinstance(args, dict):
                    raise ModelLogicError(f"Arguments for tool {call['name']} must be an object")
                yield {"type": "tool-call", "toolCallId": call["id"], "toolName": call["name"], "args": args}
                result = await self.tools.execute(call["name"], args)
                yield {"type": "tool-result", "toolCallId": call["id"], "toolName": call["name"], "result": result}
                messages.append(
                    {"role": "tool", "tool_call_id": call["id"], "content": json.dumps(result, ensure_ascii=True)}
                )

            step_event: Dict[str, Any] = {
                "type": "step-finish",
                "stepIndex": step,
                "finishReason": step_reason or ("tool_calls" if calls else "stop"),
                "usage": None,
            }
            if step_usage is not None:
                total = step_usage if total is None else total.plus(step_usage)
                step_event["usage"] = {
                    "inputTokens": step_usage.input_tokens,
                    "outputTokens": step_usage.output_tokens,
                }
            yield step_event
            if not calls:
                finish_reason = step_reason or "stop"
                break

        if not self.total_usage.done():
            self.total_usage.set_result(total)
        yield {"type": "finish", "finishReason": finish_reason}


class AgentEngine:
    def __init__(self, client: Any, temperature: float = 0.5):
        self.client = client
        self.temperature = temperature

    def start(
        self,
        *,
        endpoint: EndpointConfig,
        model: str,
        messages: List[Dict[str, Any]],
        tools: ToolRegistry,
        max_steps: int,
        prepare_step: Optional[PrepareStep] = None,
    ) -> EngineRun:
        return EngineRun(
            self.client,
            endpoint,
            model,
            messages,
            tools,
            max_steps=max(1, max_steps),
            temperature=self.temperature,
            prepare_step=prepare_step,
        )
