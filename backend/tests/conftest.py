"""Shared test fixtures and configuration for backend tests."""
import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, List, Optional, Tuple

import pytest

from chatsync.adapters import (
    InMemoryBroadcastHub,
    InMemoryContentStore,
    InMemoryMessageStore,
    InMemoryPresenceHub,
)
from chatsync.config import AppSettings
from chatsync.room.events import KNOWN_BROADCAST_EVENTS
from chatsync.room.models import Member, Message
from chatsync.room.reconciler import RoomStateReconciler
from chatsync.room.session import RoomSession
from chatsync.scheduler import Scheduler, TimerHandle

ROOM_ID = "room-1"

# 2023-11-14T22:13:20Z
START_TIME = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Manual scheduler
# ---------------------------------------------------------------------------


class FakeTimer(TimerHandle):
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Scheduler whose clock only moves when the test calls ``advance``.

    ``sleep`` records the requested delay and yields once to the loop
    without moving the clock.
    """

    def __init__(self, start: float = START_TIME) -> None:
        self._now = start
        self._timers: List[FakeTimer] = []
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = FakeTimer(self._now + max(delay, 0.0), callback)
        self._timers.append(timer)
        return timer

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            timer.callback()
        self._now = target

    @property
    def pending_timers(self) -> List[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]


def ticking_clock(scheduler: Scheduler) -> Callable[[], datetime]:
    """Store clock that follows the scheduler but never repeats a timestamp."""
    counter = itertools.count()
    return lambda: scheduler.utcnow() + timedelta(milliseconds=next(counter))


# ---------------------------------------------------------------------------
# Room harness
# ---------------------------------------------------------------------------


class RoomHarness:
    """A RoomSession for user ``me`` plus a remote peer on the same broadcast hub."""

    def __init__(
        self,
        scheduler: FakeScheduler,
        settings: Optional[AppSettings] = None,
        store: Optional[InMemoryMessageStore] = None,
    ) -> None:
        self.scheduler = scheduler
        self.store = store or InMemoryMessageStore(clock=ticking_clock(scheduler))
        self.hub = InMemoryBroadcastHub()
        self.presence_hub = InMemoryPresenceHub()
        self.content = InMemoryContentStore()
        self.me = Member(user_id="me", display_name="Ada")

        self.channel = self.hub.channel()
        self.presence = self.presence_hub.channel(self.me.user_id)
        self.peer = self.hub.channel()
        self.peer.connected = True
        self.peer_received: List[Tuple[str, dict]] = []
        for name in KNOWN_BROADCAST_EVENTS:
            self.peer.subscribe(name, partial(self._record, name))

        self.session = RoomSession(
            ROOM_ID,
            self.me,
            self.store,
            self.channel,
            self.presence,
            content_store=self.content,
            scheduler=scheduler,
            settings=settings or AppSettings(),
        )

    def _record(self, name: str, payload: dict) -> None:
        self.peer_received.append((name, payload))

    def received(self, name: str) -> List[dict]:
        return [payload for event, payload in self.peer_received if event == name]

    async def start(self) -> RoomSession:
        await self.session.start()
        await self.session.drain()
        return self.session

    async def peer_send(self, name: str, payload: dict) -> None:
        await self.peer.send(name, payload)
        await self.session.drain()

    async def settle(self, rounds: int = 10) -> None:
        """Let queued events run without waiting for a reconnect loop to finish."""
        for _ in range(rounds):
            await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def reconciler():
    return RoomStateReconciler(ROOM_ID, "me")


@pytest.fixture
def harness(scheduler):
    return RoomHarness(scheduler)


@pytest.fixture
def make_message():
    """Factory for committed messages ``minutes`` after a fixed base time."""
    base = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def _make(message_id: str, sender_id: str = "bob", minutes: float = 0, content: str = "hi", **kwargs) -> Message:
        return Message(
            id=message_id,
            room_id=ROOM_ID,
            sender_id=sender_id,
            content=content,
            created_at=base + timedelta(minutes=minutes),
            **kwargs,
        )
    return _make
