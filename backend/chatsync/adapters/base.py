"""Abstract interfaces for the services a room session talks to.

Each adapter wraps one external collaborator:

    MessageStore      ordered append/delete log of messages with a change feed,
                      plus the room roster
    BroadcastChannel  fire-and-forget pub/sub, no ordering or delivery guarantee
    PresenceChannel   heartbeat-based full online-set sync
    ContentStore      binary upload returning a retrievable URL

Handlers registered with ``subscribe*`` may be invoked from any context;
the room session marshals them onto its own event loop before touching
state.

Usage:
    from chatsync.adapters import InMemoryMessageStore

    store = InMemoryMessageStore()
    record = await store.insert(draft)
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from chatsync.room.events import ChangeEvent, ChannelStatus
from chatsync.room.models import Draft, Member, Message

ChangeHandler = Callable[[ChangeEvent], None]
PayloadHandler = Callable[[Any], None]
StatusHandler = Callable[[ChannelStatus], None]
PresenceHandler = Callable[[Set[str]], None]
Unsubscribe = Callable[[], None]


class MessageStore(ABC):
    """Authoritative message log."""

    @abstractmethod
    async def insert(self, draft: Draft) -> Message:
        """Persist a message and return the authoritative record.

        Raises:
            PersistenceWriteError: The write did not happen.
        """

    @abstractmethod
    async def delete(self, message_id: str) -> None:
        """Delete a message.

        Raises:
            PersistenceWriteError: The delete did not happen.
        """

    @abstractmethod
    async def query(self, room_id: str, since: Optional[datetime] = None) -> List[Message]:
        """Messages of a room ordered by ``created_at`` ascending, optionally from ``since``."""

    @abstractmethod
    async def get(self, message_id: str) -> Optional[Message]:
        """Fetch one record by id (used to hydrate id-only change events)."""

    @abstractmethod
    async def members(self, room_id: str) -> List[Member]:
        """The room roster, in join order."""

    @abstractmethod
    def subscribe_changes(self, room_id: str, handler: ChangeHandler) -> Unsubscribe:
        """Receive INSERT/DELETE events scoped to ``room_id``."""


class BroadcastChannel(ABC):
    """Ephemeral pub/sub for typing, reaction, read-receipt and pin events."""

    @abstractmethod
    async def connect(self) -> None:
        """Subscribe to the channel.

        Raises:
            TransientChannelError: Subscription failed or timed out.
        """

    @abstractmethod
    async def send(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Publish an event. Delivery is not guaranteed."""

    @abstractmethod
    def subscribe(self, event_name: str, handler: PayloadHandler) -> Unsubscribe:
        """Receive raw payloads for ``event_name``."""

    @abstractmethod
    def on_status(self, handler: StatusHandler) -> Unsubscribe:
        """Receive subscription status changes (drops, timeouts, closes)."""

    @abstractmethod
    async def close(self) -> None:
        """Leave the channel."""


class PresenceChannel(ABC):
    """Online-set tracking. Every sync carries the full set."""

    @abstractmethod
    async def track(self, descriptor: Dict[str, Any]) -> None:
        """Announce the local user as online."""

    @abstractmethod
    async def untrack(self) -> None:
        """Withdraw the local user."""

    @abstractmethod
    def subscribe(self, handler: PresenceHandler) -> Unsubscribe:
        """Receive the full online user-id set on every sync."""


class ContentStore(ABC):
    """Binary object storage for attachments."""

    @abstractmethod
    async def upload(self, data: bytes, content_type: str, object_name: str) -> str:
        """Upload ``data`` and return its public URL.

        Raises:
            UploadError: The upload failed.
        """
