import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .cancellation import CancelSignal
from .engine import EngineRun
from .errors import ClientAbort
from .schemas import ContinuationState
from .session import Session

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[Dict[str, Any]], Awaitable[None]]
CaptureHook = Callable[[Session], Awaitable[ContinuationState]]

COMPLETED = "completed"
CONTINUED = "continued"

CONTINUATION_MESSAGE = "Response paused to stay within the execution time limit. Continuing in a follow-up request."


def continuation_event(state: ContinuationState) -> Dict[str, Any]:
    return {
        "type": "continuation_signal",
        "continuationState": state.model_dump(),
        "message": CONTINUATION_MESSAGE,
    }


async def stream_attempt(
    session: Session,
    run: EngineRun,
    emit: Emit,
    capture: CaptureHook,
    cancel: Optional[CancelSignal] = None,
) -> str:
    """Relay one attempt's events until it ends, the deadline hits, or the request is cancelled.

    Buffers are updated before an event is relayed, so a continuation captured here holds
    exactly what the client has already seen. When the deadline is reached the pending event
    is dropped (a step-finish still books its usage), the continuation is emitted, and the
    event source is closed without reading any further.
    """
    session.total_usage = run.total_usage
    events = run.events()
    try:
        async for event in events:
            if session.continuation is None and session.monitor.status().should_continue:
                if event.get("type") == "step-finish":
                    session.record_step(event)
                state = await capture(session)
                logger.info(
                    "Request %s paused at %.0fms after %s steps; continuation %s",
                    session.request_id,
                    session.monitor.elapsed_ms(),
                    session.step_count,
                    state.token,
                )
                await emit(continuation_event(state))
                return CONTINUED
            session.record(event)
            await emit(event)
    except asyncio.CancelledError:
        if cancel is None or not cancel.is_set():
            raise
        task = asyncio.current_task()
        if task is not None:
            task.uncancel()
        if cancel.timed_out:
            session.errored = True
            session.error_message = "Request exceeded the execution time limit"
        else:
            session.client_aborted = True
        raise ClientAbort(cancel.reason or "client_disconnect") from None
    finally:
        await events.aclose()
    session.completed = True
    return COMPLETED
