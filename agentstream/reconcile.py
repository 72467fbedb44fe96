"""Turns a finished session into at most one ledger deduction.

Usage is taken from the first source that has a signal: the end-of-stream total
(only after a normal finish, waited on for a bounded window), the per-step usage
the stream reported, or a character-count estimate when text was produced but no
usage ever arrived. A session with none of these is not charged.
"""

import asyncio
import logging
from typing import Optional, Tuple

from .errors import BillingReconciliationFailure
from .ledger import CreditLedger
from .schemas import LedgerEntry, Usage
from .session import Session

logger = logging.getLogger("uvicorn.error")


async def resolve_usage(session: Session) -> Tuple[Optional[Usage], str]:
    future = session.total_usage
    if session.completed and future is not None and not future.cancelled():
        wait_s = session.monitor.usage_wait_ms() / 1000.0
        try:
            total = await asyncio.wait_for(future, timeout=wait_s)
            if total is not None and not total.is_empty:
                return session.usage_offset.plus(total), "authoritative"
            logger.warning("Stream for request %s ended without a usage total", session.request_id)
        except asyncio.TimeoutError:
            logger.warning(
                "Usage total for request %s not available after %.1fs; using step usage",
                session.request_id,
                wait_s,
            )
    if session.usage_observed:
        return session.usage, "per_step"
    estimate = session.observed_usage()
    if estimate is not None:
        logger.warning(
            "No usage reported for request %s; estimating %s in / %s out tokens from text length",
            session.request_id,
            estimate.input_tokens,
            estimate.output_tokens,
        )
        return estimate, "estimated"
    return None, "none"


async def reconcile(session: Session, ledger: CreditLedger) -> Optional[LedgerEntry]:
    """Bill the session once. Later calls for the same session return None."""
    if session.reconciled:
        return None
    session.reconciled = True

    if session.monitor.within_emergency_margin():
        logger.warning(
            "Skipping billing for request %s: %.0fms elapsed, too close to the host limit",
            session.request_id,
            session.monitor.elapsed_ms(),
        )
        return None
    if session.continuation is not None and not session.client_aborted:
        logger.info(
            "Billing for request %s deferred to continuation %s",
            session.request_id,
            session.continuation.token,
        )
        return None

    usage, source = await resolve_usage(session)
    carried = session.carried
    if usage is None and carried.usage.is_empty:
        logger.warning("Skipping billing for request %s: no usage and no output", session.request_id)
        return None
    billable = carried.usage.plus(usage or Usage())
    if usage is None:
        source = "deferred"
    steps = carried.steps + session.step_count
    response_time_ms = carried.response_time_ms + int(session.monitor.elapsed_ms())
    outcome = session.outcome
    try:
        result = await ledger.deduct(
            session.user_id,
            billable,
            {
                "model": session.active_model,
                "request_id": session.request_id,
                "steps": steps,
                "response_time_ms": response_time_ms,
                "status": outcome,
                "error_message": session.error_message,
                "usage_source": source,
                "fallback_used": session.fallback_used,
                "continuation_chain": bool(carried.models),
            },
        )
        if not result.success:
            raise BillingReconciliationFailure(f"{result.error_code}: {result.error}")
    except Exception as exc:
        logger.warning("Billing failed for request %s: %s", session.request_id, exc)
        return None
    return LedgerEntry(
        user_id=session.user_id,
        request_id=session.request_id,
        model=session.active_model,
        input_tokens=billable.input_tokens,
        output_tokens=billable.output_tokens,
        steps=steps,
        response_time_ms=response_time_ms,
        outcome=outcome,
        usage_source=source,
        credits_used=result.credits_used,
        new_balance=result.new_balance,
    )
