import logging
from typing import Any, Dict, List, Optional, Tuple

from .cancellation import CancelSignal
from .config import AppSettings, EndpointConfig
from .engine import AgentEngine
from .errors import classify_outcome
from .session import ProviderAttempt, Session
from .stream_loop import CaptureHook, Emit, stream_attempt
from .tools import ToolRegistry

logger = logging.getLogger("uvicorn.error")

FALLBACK_MESSAGE = "{original} is temporarily unavailable. Switched to {fallback} to keep working on your request."
RESUME_PARTIAL_INSTRUCTION = (
    "Your previous response was cut off by a provider error. The assistant message above is exactly "
    "what you had already written. Continue from that exact point without restarting, repeating, or "
    "summarizing it."
)


def route_model(settings: AppSettings, model: str, on_fallback: bool) -> Tuple[EndpointConfig, str]:
    """Endpoint and provider-side model name for a public model id."""
    if on_fallback and model == settings.fallback_model_id:
        endpoint = settings.fallback_endpoint
        return endpoint, endpoint.model_id or model
    return settings.gateway_endpoint, model


def fallback_messages(messages: List[Dict[str, Any]], partial_text: str) -> List[Dict[str, Any]]:
    if not partial_text:
        return list(messages)
    return list(messages) + [
        {"role": "assistant", "content": partial_text},
        {"role": "user", "content": RESUME_PARTIAL_INSTRUCTION},
    ]


def fallback_notice(original_model: str, fallback_model: str, had_partial: bool) -> Dict[str, Any]:
    return {
        "type": "provider_fallback",
        "originalModel": original_model,
        "fallbackMessage": FALLBACK_MESSAGE.format(original=original_model, fallback=fallback_model),
        "hadPartialContent": had_partial,
    }


async def run_with_fallback(
    session: Session,
    *,
    engine: AgentEngine,
    settings: AppSettings,
    tools: ToolRegistry,
    emit: Emit,
    capture: CaptureHook,
    cancel: Optional[CancelSignal] = None,
) -> str:
    """Run the session on its model, switching to the fallback model at most once.

    Only a provider failure on a model other than the fallback model is retried. Every
    other failure, and any failure of the fallback attempt itself, is re-raised.
    """
    messages = session.messages

    def prepare_step(step: int) -> Optional[str]:
        return session.monitor.status().warning_message

    while True:
        attempt = ProviderAttempt(model=session.active_model)
        session.attempts.append(attempt)
        endpoint, provider_model = route_model(settings, session.active_model, session.fallback_used)
        run = engine.start(
            endpoint=endpoint,
            model=provider_model,
            messages=messages,
            tools=tools,
            max_steps=session.remaining_steps if session.fallback_used else session.max_steps,
            prepare_step=prepare_step,
        )
        try:
            result = await stream_attempt(session, run, emit, capture, cancel=cancel)
        except Exception as exc:
            attempt.outcome = classify_outcome(exc)
            attempt.error = str(exc)
            if attempt.outcome == "providerError" and session.can_fall_back(settings.fallback_model_id):
                original = session.active_model
                had_partial = session.has_output
                logger.info(
                    "Provider error on %s for request %s (%s); retrying on %s",
                    original,
                    session.request_id,
                    exc,
                    settings.fallback_model_id,
                )
                await emit(fallback_notice(original, settings.fallback_model_id, had_partial))
                session.switch_to_fallback(settings.fallback_model_id)
                messages = fallback_messages(session.messages, session.text)
                continue
            logger.warning(
                "Attempt on %s for request %s ended with %s: %s",
                session.active_model,
                session.request_id,
                attempt.outcome,
                exc,
            )
            if attempt.outcome != "aborted":
                session.errored = True
                session.error_message = str(exc)
            raise
        attempt.outcome = "success"
        return result
