import asyncio
import json
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .deadline import DeadlineMonitor
from .errors import AttemptOutcome
from .schemas import ContinuationState, DeferredUsage, Usage

CHARS_PER_TOKEN = 4


def estimate_tokens(chars: int) -> int:
    if chars <= 0:
        return 0
    return math.ceil(chars / CHARS_PER_TOKEN)


def message_chars(messages: List[Dict[str, Any]]) -> int:
    total = 0
    for msg in messages:
        content = msg.get("content")
        if content is None:
            continue
        if isinstance(content, str):
            total += len(content)
        else:
            total += len(json.dumps(content, ensure_ascii=True))
    return total


@dataclass
class ProviderAttempt:
    model: str
    outcome: Optional[AttemptOutcome] = None
    error: Optional[str] = None


@dataclass
class Session:
    """Everything one inbound chat request accumulates while it streams."""

    request_id: str
    user_id: str
    model: str
    messages: List[Dict[str, Any]]
    monitor: DeadlineMonitor
    max_steps: int
    project_id: Optional[str] = None
    carried: DeferredUsage = field(default_factory=DeferredUsage)
    text: str = ""
    reasoning: str = ""
    tool_events: List[Dict[str, Any]] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    usage_observed: bool = False
    step_count: int = 0
    client_aborted: bool = False
    errored: bool = False
    completed: bool = False
    error_message: Optional[str] = None
    active_model: str = ""
    fallback_used: bool = False
    attempts: List[ProviderAttempt] = field(default_factory=list)
    total_usage: Optional[asyncio.Future] = None
    usage_offset: Usage = field(default_factory=Usage)
    continuation: Optional[ContinuationState] = None
    reconciled: bool = False

    def __post_init__(self) -> None:
        if not self.active_model:
            self.active_model = self.model

    def record(self, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "text-delta":
            self.text += str(event.get("text") or "")
        elif kind == "reasoning-delta":
            self.reasoning += str(event.get("text") or "")
        elif kind in ("tool-call", "tool-result"):
            self.tool_events.append(event)
        elif kind == "step-finish":
            self.record_step(event)

    def record_step(self, event: Dict[str, Any]) -> None:
        self.step_count += 1
        usage = event.get("usage")
        if not isinstance(usage, dict):
            return
        self.usage = self.usage.plus(
            Usage(
                input_tokens=int(usage.get("inputTokens") or 0),
                output_tokens=int(usage.get("outputTokens") or 0),
            )
        )
        self.usage_observed = True

    @property
    def has_output(self) -> bool:
        return bool(self.text or self.reasoning)

    @property
    def remaining_steps(self) -> int:
        return max(1, self.max_steps - self.step_count)

    def can_fall_back(self, fallback_model_id: str) -> bool:
        return not self.fallback_used and self.active_model != fallback_model_id

    def switch_to_fallback(self, fallback_model_id: str) -> None:
        if self.fallback_used:
            raise RuntimeError("fallback already used for this request")
        self.fallback_used = True
        self.active_model = fallback_model_id
        # Earlier attempts never produce an end-of-stream total; keep what they reported.
        self.usage_offset = self.usage

    def merged_messages(self) -> List[Dict[str, Any]]:
        """Prior history with the in-progress assistant output folded into the last turn."""
        merged = [dict(msg) for msg in self.messages]
        if not self.has_output:
            return merged
        if merged and merged[-1].get("role") == "assistant" and isinstance(merged[-1].get("content"), str):
            last = merged[-1]
            last["content"] = last["content"] + self.text
            if self.reasoning:
                last["reasoning"] = (last.get("reasoning") or "") + self.reasoning
            return merged
        assistant: Dict[str, Any] = {"role": "assistant", "content": self.text}
        if self.reasoning:
            assistant["reasoning"] = self.reasoning
        merged.append(assistant)
        return merged

    def observed_usage(self) -> Optional[Usage]:
        """Best usage available without waiting: reported step usage, else a character estimate."""
        if self.usage_observed:
            return self.usage
        if self.has_output:
            return Usage(
                input_tokens=estimate_tokens(message_chars(self.messages)),
                output_tokens=estimate_tokens(len(self.text) + len(self.reasoning)),
            )
        return None

    def capture(self, project_files: Optional[Dict[str, str]] = None) -> ContinuationState:
        if self.continuation is not None:
            raise RuntimeError("continuation already captured for this request")
        self.continuation = ContinuationState(
            token=uuid.uuid4().hex,
            elapsed_ms=int(self.monitor.elapsed_ms()),
            messages=self.merged_messages(),
            tool_events=list(self.tool_events),
            model=self.active_model,
            user_id=self.user_id,
            request_id=self.request_id,
            project_id=self.project_id,
            project_files=dict(project_files or {}),
            step_count=self.step_count,
        )
        return self.continuation

    def chain_usage(self) -> DeferredUsage:
        """Usage of the whole chain up to now, for a follow-up request to bill."""
        current = self.observed_usage() or Usage()
        return DeferredUsage(
            usage=self.carried.usage.plus(current),
            steps=self.carried.steps + self.step_count,
            response_time_ms=self.carried.response_time_ms + int(self.monitor.elapsed_ms()),
            models=self.carried.models + [self.active_model],
        )

    @property
    def outcome(self) -> str:
        if self.client_aborted:
            return "aborted"
        if self.errored or not (self.completed or self.continuation is not None):
            return "error"
        return "success"
