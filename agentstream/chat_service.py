import asyncio
import logging
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from .budget import get_affordable_steps
from .cancellation import CLIENT_DISCONNECT, CancelSignal
from .config import AppSettings
from .continuation_store import ContinuationStore
from .deadline import DeadlineLimits, DeadlineMonitor
from .engine import AgentEngine
from .errors import ClientAbort, ModelLogicError, ProviderError
from .fallback import run_with_fallback
from .ledger import CreditLedger
from .project_store import ProjectStore
from .reconcile import reconcile
from .schemas import ChatRequest, ContinuationState, StepBudget
from .session import Session
from .tools import ToolRegistry, build_registry

logger = logging.getLogger("uvicorn.error")

SYSTEM_PROMPT = (
    "You are an AI coding assistant working inside the user's project. Use the available tools to "
    "inspect and change files, make one tool call at a time, and finish with a short summary of what "
    "you changed."
)
RESUME_INSTRUCTION = (
    "Your previous response was paused because it hit the execution time limit. Continue exactly where "
    "it stopped. Do not restart, repeat finished work, or re-read files you already handled."
)


class ChatRejected(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class ChatStream:
    """Consumer side of one running chat request."""

    def __init__(self, session: Session, cancel: CancelSignal, queue: asyncio.Queue, task: asyncio.Task):
        self.session = session
        self.cancel = cancel
        self.queue = queue
        self.task = task
        self.finished = False

    async def events(self) -> AsyncGenerator[Dict[str, Any], None]:
        try:
            while True:
                item = await self.queue.get()
                if item is None:
                    self.finished = True
                    break
                yield item
        finally:
            self.close()

    def close(self) -> None:
        # The client went away before the last event; stop paying for tokens nobody reads.
        if not self.finished:
            self.cancel.fire(CLIENT_DISCONNECT)


def _tool_summary(tool_events: List[Dict[str, Any]]) -> Optional[str]:
    calls = [event for event in tool_events if event.get("type") == "tool-call"]
    if not calls:
        return None
    lines = []
    for event in calls:
        args = event.get("args") or {}
        target = args.get("path") if isinstance(args, dict) else None
        lines.append(f"- {event.get('toolName')}" + (f" {target}" if target else ""))
    return "Tool calls already completed before the pause:\n" + "\n".join(lines)


class ChatService:
    def __init__(
        self,
        *,
        settings: AppSettings,
        ledger: CreditLedger,
        continuations: ContinuationStore,
        project_store: ProjectStore,
        engine: AgentEngine,
        tasks: Dict[str, asyncio.Task],
        limits: Optional[DeadlineLimits] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.continuations = continuations
        self.project_store = project_store
        self.engine = engine
        self.tasks = tasks
        self.limits = limits or DeadlineLimits()
        self.clock = clock

    async def _budget(self, user_id: str, model: str) -> StepBudget:
        wallet = await self.ledger.get_wallet(user_id)
        if wallet is None:
            raise ChatRejected(404, "Wallet not found")
        budget = get_affordable_steps(wallet.current_plan, model, wallet.credits_balance)
        if budget.max_steps <= 0:
            raise ChatRejected(402, "Insufficient credits. Add credits to continue.")
        return budget

    async def prepare(self, payload: ChatRequest, user_id: str) -> Session:
        """Validate a request and build its session. Raises ChatRejected before any model call."""
        if not user_id:
            raise ChatRejected(401, "Missing X-User-ID header")
        monitor = DeadlineMonitor(self.limits, self.clock)
        request_id = uuid.uuid4().hex
        if payload.continuation_token:
            return await self._resume(payload.continuation_token, user_id, request_id, monitor)

        messages = [msg.model_dump(exclude_none=True) for msg in payload.messages]
        if not any(msg.get("role") == "user" for msg in messages):
            raise ChatRejected(400, "messages must include a user message")
        limit = await self.ledger.check_monthly_request_limit(user_id)
        if not limit["allowed"]:
            raise ChatRejected(429, limit.get("reason") or "Monthly request limit reached")
        model = payload.model or self.settings.default_model
        budget = await self._budget(user_id, model)
        history = messages[-self.settings.max_history_messages :]
        if not any(msg.get("role") == "system" for msg in history):
            history.insert(0, {"role": "system", "content": SYSTEM_PROMPT})
        return Session(
            request_id=request_id,
            user_id=user_id,
            model=model,
            messages=history,
            monitor=monitor,
            max_steps=budget.max_steps,
            project_id=payload.project_id,
        )

    async def _resume(self, token: str, user_id: str, request_id: str, monitor: DeadlineMonitor) -> Session:
        found = await self.continuations.get(token)
        if found is None:
            raise ChatRejected(404, "Unknown continuation token")
        state, deferred, _status = found
        if state.user_id != user_id:
            raise ChatRejected(403, "Continuation token belongs to another user")
        budget = await self._budget(user_id, state.model)
        if not await self.continuations.claim(token):
            raise ChatRejected(409, "Continuation token was already used")
        if state.project_id:
            self.project_store.restore(state.project_id, state.project_files)
        logger.info("Resuming request %s from continuation %s as %s", state.request_id, token, request_id)
        return Session(
            request_id=request_id,
            user_id=user_id,
            model=state.model,
            messages=self._resume_messages(state),
            monitor=monitor,
            max_steps=budget.max_steps,
            project_id=state.project_id,
            carried=deferred,
        )

    def _resume_messages(self, state: ContinuationState) -> List[Dict[str, Any]]:
        messages = [dict(msg) for msg in state.messages]
        summary = _tool_summary(state.tool_events)
        if summary:
            messages.append({"role": "system", "content": summary})
        messages.append({"role": "user", "content": RESUME_INSTRUCTION})
        return messages

    def tools_for(self, session: Session) -> ToolRegistry:
        return build_registry(self.project_store, session.project_id)

    def start(self, session: Session) -> ChatStream:
        queue: asyncio.Queue = asyncio.Queue()
        cancel = CancelSignal()
        task = asyncio.create_task(self._produce(session, cancel, queue))
        remaining_ms = self.limits.hard_limit_ms - session.monitor.elapsed_ms()
        cancel.start_timer(remaining_ms / 1000.0)
        self.tasks[session.request_id] = task
        return ChatStream(session, cancel, queue, task)

    async def _capture(self, session: Session) -> ContinuationState:
        files = self.project_store.snapshot(session.project_id) if session.project_id else {}
        deferred = session.chain_usage()
        state = session.capture(files)
        await self.continuations.save(state, deferred)
        return state

    async def _produce(self, session: Session, cancel: CancelSignal, queue: asyncio.Queue) -> None:
        async def emit(event: Dict[str, Any]) -> None:
            await queue.put(event)

        error_event: Optional[Dict[str, Any]] = None
        try:
            # Only the provider attempt is cancellable; billing below always runs to the end.
            attempt = asyncio.create_task(
                run_with_fallback(
                    session,
                    engine=self.engine,
                    settings=self.settings,
                    tools=self.tools_for(session),
                    emit=emit,
                    capture=self._capture,
                    cancel=cancel,
                )
            )
            cancel.bind(attempt)
            try:
                await attempt
            except asyncio.CancelledError:
                if not cancel.is_set() or not attempt.cancelled():
                    raise
                # Cancelled after the attempt stopped streaming, e.g. while its continuation was stored.
                if cancel.client_disconnected:
                    session.client_aborted = True
                elif session.continuation is None and not session.completed:
                    session.errored = True
                    session.error_message = "Request exceeded the execution time limit"
            except ClientAbort:
                pass
            except ProviderError as exc:
                error_event = {"type": "error", "code": "provider_error", "error": str(exc)}
            except ModelLogicError as exc:
                error_event = {"type": "error", "code": "model_error", "error": str(exc)}
            except Exception as exc:
                logger.exception("Chat request %s failed", session.request_id)
                session.errored = True
                session.error_message = str(exc)
                error_event = {"type": "error", "code": "internal_error", "error": "Internal error"}
            finally:
                cancel.detach()
            if cancel.timed_out and session.errored and error_event is None:
                error_event = {"type": "error", "code": "timeout", "error": session.error_message}
            if error_event is not None:
                await emit(error_event)
        finally:
            try:
                entry = await reconcile(session, self.ledger)
                if session.continuation is not None and session.client_aborted:
                    # Billed here, so nobody may resume and bill the chain again.
                    await self.continuations.claim(session.continuation.token)
                if entry is not None:
                    await emit(
                        {
                            "type": "usage",
                            "inputTokens": entry.input_tokens,
                            "outputTokens": entry.output_tokens,
                            "creditsUsed": entry.credits_used,
                            "newBalance": entry.new_balance,
                        }
                    )
                await emit(
                    {
                        "type": "done",
                        "requestId": session.request_id,
                        "outcome": session.outcome,
                        "continued": session.continuation is not None and not session.client_aborted,
                        "fallbackUsed": session.fallback_used,
                    }
                )
            finally:
                self.tasks.pop(session.request_id, None)
                await queue.put(None)
