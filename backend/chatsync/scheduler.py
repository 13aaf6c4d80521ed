"""Clock and timer abstraction used for typing TTLs and send debouncing.

Correctness-critical timers go through this interface instead of any UI or
animation timer, so they keep working whether or not anything is rendering.
Tests swap in a manual implementation that advances time explicitly.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled before it fires."""

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the callback. Cancelling a fired or cancelled timer is a no-op."""


class Scheduler(ABC):
    """Wall clock plus one-shot timers."""

    @abstractmethod
    def now(self) -> float:
        """Current wall-clock time in seconds since the epoch."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """Suspend the calling coroutine for ``delay`` seconds."""

    def utcnow(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return datetime.fromtimestamp(self.now(), tz=timezone.utc)


class _AsyncioTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop.

    The loop is looked up lazily so the scheduler can be constructed before
    the loop that will drive the session exists.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _AsyncioTimer(self._get_loop().call_later(max(delay, 0.0), callback))

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
