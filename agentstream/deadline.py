import time
from dataclasses import dataclass
from typing import Callable, Optional

HOST_CEILING_MS = 300_000
HARD_LIMIT_MS = 290_000
CONTINUATION_THRESHOLD_MS = 230_000
WARNING_THRESHOLD_MS = 200_000
EMERGENCY_MARGIN_MS = 8_000

WRAP_UP_MESSAGE = (
    "TIME LIMIT APPROACHING: {remaining_s}s of execution time remain for this response. "
    "Do not start new tool calls. Finish the change you are making, then summarize what was "
    "done and what is left so the work can be continued."
)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class DeadlineLimits:
    host_ceiling_ms: int = HOST_CEILING_MS
    hard_limit_ms: int = HARD_LIMIT_MS
    continuation_threshold_ms: int = CONTINUATION_THRESHOLD_MS
    warning_threshold_ms: int = WARNING_THRESHOLD_MS
    emergency_margin_ms: int = EMERGENCY_MARGIN_MS


@dataclass(frozen=True)
class DeadlineStatus:
    elapsed_ms: float
    remaining_ms: float
    should_continue: bool
    is_approaching_timeout: bool
    warning_message: Optional[str]


class DeadlineMonitor:
    """Pure time arithmetic over a fixed start time. Safe to call on every event."""

    def __init__(
        self,
        limits: Optional[DeadlineLimits] = None,
        clock: Optional[Callable[[], float]] = None,
        started_at_ms: Optional[float] = None,
    ):
        self.limits = limits or DeadlineLimits()
        self.clock = clock or monotonic_ms
        self.started_at_ms = self.clock() if started_at_ms is None else started_at_ms

    def elapsed_ms(self) -> float:
        return max(0.0, self.clock() - self.started_at_ms)

    def status(self) -> DeadlineStatus:
        elapsed = self.elapsed_ms()
        remaining = max(0.0, self.limits.hard_limit_ms - elapsed)
        approaching = elapsed >= self.limits.warning_threshold_ms
        warning = None
        if approaching:
            warning = WRAP_UP_MESSAGE.format(remaining_s=int(remaining // 1000))
        return DeadlineStatus(
            elapsed_ms=elapsed,
            remaining_ms=remaining,
            should_continue=elapsed >= self.limits.continuation_threshold_ms,
            is_approaching_timeout=approaching,
            warning_message=warning,
        )

    def within_emergency_margin(self) -> bool:
        """True when the host ceiling is close enough that no more work should start."""
        left = self.limits.host_ceiling_ms - self.elapsed_ms()
        return left <= self.limits.emergency_margin_ms

    def usage_wait_ms(self) -> float:
        """Window to wait for the authoritative usage total: max(5s, min(remaining - 5s, 15s))."""
        remaining = self.status().remaining_ms
        return max(5000.0, min(remaining - 5000.0, 15000.0))
