import asyncio
import logging
from typing import Optional

logger = logging.getLogger("uvicorn.error")

TIMEOUT = "timeout"
CLIENT_DISCONNECT = "client_disconnect"


class CancelSignal:
    """One cancellation signal fed by the hard request timer and by client disconnect.

    The first reason wins. While a task is bound, firing cancels it; once the task
    has been detached, firing only records the reason.
    """

    def __init__(self) -> None:
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._event = asyncio.Event()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    def detach(self) -> None:
        self._task = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def start_timer(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, seconds), self.fire, TIMEOUT)

    def fire(self, reason: str) -> bool:
        if self.reason is not None:
            return False
        self.reason = reason
        self._event.set()
        task = self._task
        if task is not None and not task.done():
            logger.info("Cancelling chat request (%s)", reason)
            task.cancel()
        return True

    def is_set(self) -> bool:
        return self.reason is not None

    @property
    def timed_out(self) -> bool:
        return self.reason == TIMEOUT

    @property
    def client_disconnected(self) -> bool:
        return self.reason == CLIENT_DISCONNECT

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason or ""
