"""In-process adapters for local development and tests.

Single-process only. They behave like the real services closely enough to
exercise the session end to end:

    - InMemoryMessageStore assigns ids and timestamps on insert and emits
      the change feed synchronously, before ``insert`` returns (the same race
      a real change feed can produce).
    - InMemoryBroadcastHub delivers each event to every other connected
      channel; a disconnected channel silently drops sends (at-most-once).
    - InMemoryPresenceHub pushes the full online set to every subscriber on
      each track/untrack.
    - InMemoryContentStore keeps uploaded bytes in a dict.

Each adapter supports failure injection so error paths can be tested.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from chatsync.adapters.base import (
    BroadcastChannel,
    ChangeHandler,
    ContentStore,
    MessageStore,
    PayloadHandler,
    PresenceChannel,
    PresenceHandler,
    StatusHandler,
    Unsubscribe,
)
from chatsync.errors import PersistenceWriteError, TransientChannelError, UploadError
from chatsync.room.events import ChangeEvent, ChangeKind, ChannelStatus
from chatsync.room.models import Draft, Member, Message

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _remover(handlers: list, handler) -> Unsubscribe:
    def unsubscribe() -> None:
        if handler in handlers:
            handlers.remove(handler)
    return unsubscribe


# =============================================================================
# Message store
# =============================================================================


class InMemoryMessageStore(MessageStore):
    """Message log kept in a list.

    Args:
        clock: Source of ``created_at`` for inserted records.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._messages: Dict[str, Message] = {}
        self._handlers: Dict[str, List[ChangeHandler]] = {}
        self._members: Dict[str, List[Member]] = {}

        # Number of upcoming writes (insert or delete) that fail
        self.fail_writes = 0

        # Emit id-only INSERT events, forcing subscribers to hydrate
        self.emit_id_only = False

    def _check_write(self, op: str) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise PersistenceWriteError(f"{op} rejected by store")

    async def insert(self, draft: Draft) -> Message:
        self._check_write("insert")
        record = Message(
            id=str(uuid.uuid4()),
            room_id=draft.room_id,
            sender_id=draft.sender_id,
            content=draft.content,
            image_url=draft.image_url,
            reply_to_id=draft.reply_to_id,
            created_at=self._clock(),
        )
        self._messages[record.id] = record
        if self.emit_id_only:
            self.emit(record.room_id, ChangeEvent(kind=ChangeKind.INSERT, message_id=record.id))
        else:
            self.emit(record.room_id, ChangeEvent.insert(record))
        return record

    async def delete(self, message_id: str) -> None:
        self._check_write("delete")
        record = self._messages.pop(message_id, None)
        if record is not None:
            self.emit(record.room_id, ChangeEvent.delete(message_id))

    async def query(self, room_id: str, since: Optional[datetime] = None) -> List[Message]:
        records = [m for m in self._messages.values() if m.room_id == room_id]
        if since is not None:
            records = [m for m in records if m.created_at >= since]
        return sorted(records, key=lambda m: m.sort_key)

    async def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    async def members(self, room_id: str) -> List[Member]:
        return list(self._members.get(room_id, []))

    def add_member(self, room_id: str, member: Member) -> None:
        """Join ``member`` to the room; re-adding replaces the entry in place."""
        roster = self._members.setdefault(room_id, [])
        for i, existing in enumerate(roster):
            if existing.user_id == member.user_id:
                roster[i] = member
                return
        roster.append(member)

    def subscribe_changes(self, room_id: str, handler: ChangeHandler) -> Unsubscribe:
        handlers = self._handlers.setdefault(room_id, [])
        handlers.append(handler)
        return _remover(handlers, handler)

    def seed(self, *records: Message) -> None:
        """Add records without emitting change events."""
        for record in records:
            self._messages[record.id] = record

    def emit(self, room_id: str, event: ChangeEvent) -> None:
        """Push a change event to the room's subscribers."""
        for handler in list(self._handlers.get(room_id, [])):
            handler(event)


# =============================================================================
# Broadcast
# =============================================================================


class InMemoryBroadcastHub:
    """Shared medium connecting several InMemoryBroadcastChannel instances."""

    def __init__(self) -> None:
        self._channels: List["InMemoryBroadcastChannel"] = []

    def channel(self) -> "InMemoryBroadcastChannel":
        ch = InMemoryBroadcastChannel(self)
        self._channels.append(ch)
        return ch

    def deliver(self, sender: "InMemoryBroadcastChannel", event_name: str, payload: Any) -> int:
        delivered = 0
        for ch in list(self._channels):
            if ch is sender or not ch.connected:
                continue
            ch.receive(event_name, payload)
            delivered += 1
        return delivered


class InMemoryBroadcastChannel(BroadcastChannel):
    def __init__(self, hub: InMemoryBroadcastHub) -> None:
        self._hub = hub
        self._handlers: Dict[str, List[PayloadHandler]] = {}
        self._status_handlers: List[StatusHandler] = []
        self.connected = False
        self.connect_attempts = 0
        self.sent: List[tuple] = []

        # Number of upcoming connect() calls that fail
        self.fail_connects = 0

    async def connect(self) -> None:
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise TransientChannelError("subscription timed out")
        self.connected = True

    async def send(self, event_name: str, payload: Dict[str, Any]) -> None:
        if not self.connected:
            logger.debug(f"[Broadcast] Dropped '{event_name}' while disconnected")
            return
        self.sent.append((event_name, payload))
        self._hub.deliver(self, event_name, payload)

    def subscribe(self, event_name: str, handler: PayloadHandler) -> Unsubscribe:
        handlers = self._handlers.setdefault(event_name, [])
        handlers.append(handler)
        return _remover(handlers, handler)

    def on_status(self, handler: StatusHandler) -> Unsubscribe:
        self._status_handlers.append(handler)
        return _remover(self._status_handlers, handler)

    async def close(self) -> None:
        self.connected = False

    def receive(self, event_name: str, payload: Any) -> None:
        """Deliver a raw payload as if it came off the wire."""
        for handler in list(self._handlers.get(event_name, [])):
            handler(payload)

    def drop(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> None:
        """Simulate a subscription drop."""
        self.connected = False
        for handler in list(self._status_handlers):
            handler(status)


# =============================================================================
# Presence
# =============================================================================


class InMemoryPresenceHub:
    """Online set shared by several InMemoryPresenceChannel instances."""

    def __init__(self) -> None:
        self._online: Dict[str, Dict[str, Any]] = {}
        self._handlers: List[PresenceHandler] = []

    def channel(self, key: str) -> "InMemoryPresenceChannel":
        return InMemoryPresenceChannel(self, key)

    @property
    def online(self) -> Set[str]:
        return set(self._online)

    def set_online(self, key: str, descriptor: Dict[str, Any]) -> None:
        self._online[key] = descriptor
        self.sync()

    def set_offline(self, key: str) -> None:
        if self._online.pop(key, None) is not None:
            self.sync()

    def sync(self) -> None:
        online = set(self._online)
        for handler in list(self._handlers):
            handler(set(online))

    def subscribe(self, handler: PresenceHandler) -> Unsubscribe:
        self._handlers.append(handler)
        return _remover(self._handlers, handler)


class InMemoryPresenceChannel(PresenceChannel):
    def __init__(self, hub: InMemoryPresenceHub, key: str) -> None:
        self._hub = hub
        self._key = key

    async def track(self, descriptor: Dict[str, Any]) -> None:
        self._hub.set_online(self._key, descriptor)

    async def untrack(self) -> None:
        self._hub.set_offline(self._key)

    def subscribe(self, handler: PresenceHandler) -> Unsubscribe:
        return self._hub.subscribe(handler)


# =============================================================================
# Content
# =============================================================================


class InMemoryContentStore(ContentStore):
    def __init__(self, base_url: str = "memory://chat-images") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[str, bytes] = {}
        self.fail_uploads = False

    async def upload(self, data: bytes, content_type: str, object_name: str) -> str:
        if self.fail_uploads:
            raise UploadError(f"upload of {object_name} rejected")
        self.objects[object_name] = data
        return f"{self.base_url}/{object_name}"
