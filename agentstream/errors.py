"""Failure taxonomy for a chat request.

Only ProviderError is eligible for the one-shot model fallback. Everything a
model or a tool produces on its own is a ModelLogicError and ends the turn.
"""

import asyncio
from typing import Literal, Optional

import httpx

AttemptOutcome = Literal["success", "providerError", "modelLogicError", "aborted"]

_PROVIDER_STATUS_CODES = {401, 402, 403, 408, 429}

_PROVIDER_MARKERS = (
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "429",
    "rate limit",
    "too many requests",
    "402",
    "payment required",
    "insufficient funds",
    "insufficient_funds",
    "top up",
    "econnrefused",
    "econnreset",
    "enotfound",
    "etimedout",
    "socket hang up",
    "fetch failed",
    "network",
    "overloaded",
    "capacity",
    "unavailable",
    "gateway",
    "upstream",
)


class ProviderError(Exception):
    """Infrastructure failure of the model provider (connectivity, auth, capacity, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ModelLogicError(Exception):
    """Failure produced by the model or a tool. Never retried on another model."""


class ClientAbort(Exception):
    def __init__(self, reason: str = "client_disconnect"):
        super().__init__(reason)
        self.reason = reason


class BillingReconciliationFailure(Exception):
    """Usage could not be written to the ledger. Logged, never surfaced to the stream."""


def is_provider_status(status: Optional[int]) -> bool:
    return isinstance(status, int) and (status in _PROVIDER_STATUS_CODES or status >= 500)


def is_provider_error(exc: BaseException) -> bool:
    if isinstance(exc, (ClientAbort, ModelLogicError, asyncio.CancelledError)):
        return False
    if isinstance(exc, ProviderError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return is_provider_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    if "aborted" in msg or "client aborted" in msg:
        return False
    status_code = getattr(exc, "status_code", None)
    if is_provider_status(status_code):
        return True
    return any(marker in msg for marker in _PROVIDER_MARKERS)


def classify_outcome(exc: BaseException) -> AttemptOutcome:
    if isinstance(exc, (ClientAbort, asyncio.CancelledError)):
        return "aborted"
    if is_provider_error(exc):
        return "providerError"
    return "modelLogicError"
