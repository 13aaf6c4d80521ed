"""Canonical state of one chat room.

RoomStateReconciler merges three independent event sources into one
consistent view:

    - message store change feed (INSERT / DELETE)
    - broadcast channel (typing, reactions, read receipts, pins)
    - presence channel (full online-set sync)

plus local optimistic placeholders from the send pipeline.

Guarantees:
    - ``messages`` stays sorted by (created_at, id) with unique ids;
      placeholders are appended at the tail.
    - Reaction, read-receipt and pin indices only reference ids present in
      ``messages``; a remote delete cascades through all of them.
    - Every ``apply_*`` method is total: unknown ids are no-ops, repeated
      or out-of-order calls are safe, and well-typed input never raises.
    - Each ``apply_*`` returns True when state changed, so the owner can
      publish snapshots only on change.

Thread Safety:
    Not thread-safe. A reconciler has exactly one owner (the room session)
    and is mutated only from that owner's event loop.
"""
import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from chatsync.room.models import (
    Draft,
    Message,
    PinAction,
    ReactionAction,
    RoomSnapshot,
    SendState,
    TypingEntry,
)

logger = logging.getLogger(__name__)


@dataclass
class OptimisticHandle:
    """Reference to a placeholder returned by ``apply_optimistic_insert``.

    The send pipeline resolves the placeholder through this handle, never by
    correlating ids or content with incoming records.
    """
    placeholder: Message
    state: SendState = SendState.PENDING_REMOTE
    committed_id: Optional[str] = field(default=None)

    @property
    def local_id(self) -> str:
        return self.placeholder.id


class RoomStateReconciler:
    """Owns the ordered message list and every per-message index of a room."""

    def __init__(self, room_id: str, self_user_id: str) -> None:
        self.room_id = room_id
        self.self_user_id = self_user_id
        self.version = 0

        self._messages: List[Message] = []
        self._ids: Set[str] = set()

        # message_id -> reaction key -> user ids
        self._reactions: Dict[str, Dict[str, Set[str]]] = {}

        # message_id -> reader user ids (only ever grows while the message exists)
        self._read_by: Dict[str, Set[str]] = {}

        self._pinned: Set[str] = set()

        # user_id -> TypingEntry
        self._typing: Dict[str, TypingEntry] = {}

        self._online: Set[str] = set()

        # committed id -> handle of a local send, until the message is removed
        self._committed: Dict[str, OptimisticHandle] = {}

    # =========================================================================
    # Message log
    # =========================================================================

    def apply_remote_insert(self, record: Message) -> bool:
        """Insert or replace a committed record.

        A record whose id is already present replaces the existing entry,
        which covers duplicate delivery and an optimistic swap that raced
        with the change feed. Receiving a message from a user also ends that
        user's typing indicator.
        """
        changed = self._typing.pop(record.sender_id, None) is not None

        if record.id in self._ids:
            idx = self._index_of(record.id)
            if self._messages[idx] != record:
                del self._messages[idx]
                self._insert_sorted(record)
                changed = True
            if changed:
                self._bump()
            return changed

        self._insert_sorted(record)
        self._ids.add(record.id)
        self._bump()
        logger.debug(f"[Reconciler] Inserted message {record.id} in room {self.room_id}")
        return True

    def apply_remote_delete(self, message_id: str) -> bool:
        """Remove a message and purge it from every index. Unknown ids are a no-op."""
        if message_id not in self._ids:
            return False
        del self._messages[self._index_of(message_id)]
        self._ids.discard(message_id)
        self._purge_indices(message_id)
        self._bump()
        logger.debug(f"[Reconciler] Deleted message {message_id} in room {self.room_id}")
        return True

    def apply_optimistic_insert(self, draft: Draft, created_at: datetime) -> OptimisticHandle:
        """Append a placeholder for ``draft`` at the tail.

        Local send times are assumed monotonic, so the tail is the right
        place without a sorted insert.
        """
        placeholder = draft.to_placeholder(created_at)
        self._messages.append(placeholder)
        self._ids.add(placeholder.id)
        self._bump()
        return OptimisticHandle(placeholder=placeholder)

    def commit_optimistic(self, handle: OptimisticHandle, record: Message) -> bool:
        """Replace the placeholder behind ``handle`` with the authoritative record."""
        if handle.state is not SendState.PENDING_REMOTE:
            return False
        self._drop_placeholder(handle)
        handle.state = SendState.COMMITTED
        handle.committed_id = record.id
        self._committed[record.id] = handle
        self.apply_remote_insert(record)
        # The swap itself is a change even when the record was already present
        self._bump()
        return True

    def discard_optimistic(self, handle: OptimisticHandle) -> bool:
        """Remove the placeholder behind ``handle`` after a failed send."""
        if handle.state is not SendState.PENDING_REMOTE:
            return False
        self._drop_placeholder(handle)
        handle.state = SendState.DRAFTING
        self._bump()
        return True

    def load_history(self, records: Iterable[Message]) -> bool:
        """Replace the committed message list with a full store query result.

        Used for the initial load and for the resync after a reconnect.
        Pending placeholders survive at the tail. Index entries for messages
        that no longer exist are purged; broadcast-derived entries for
        surviving messages are kept because broadcasts are not redelivered.
        """
        committed: Dict[str, Message] = {}
        for record in records:
            committed[record.id] = record
        placeholders = [m for m in self._messages if m.pending]

        ordered = sorted(committed.values(), key=lambda m: m.sort_key)
        new_messages = ordered + placeholders
        if new_messages == self._messages:
            return False

        removed = self._ids - set(committed) - {p.id for p in placeholders}
        self._messages = new_messages
        self._ids = {m.id for m in new_messages}
        for message_id in removed:
            self._purge_indices(message_id)
        self._bump()
        logger.info(
            f"[Reconciler] Loaded {len(ordered)} messages for room {self.room_id} "
            f"({len(removed)} removed, {len(placeholders)} pending kept)"
        )
        return True

    # =========================================================================
    # Broadcast-derived state
    # =========================================================================

    def apply_reaction_event(
        self, message_id: str, reaction_key: str, user_id: str, action: ReactionAction
    ) -> bool:
        """Add or remove ``user_id`` from a reaction set.

        Adding a present member or removing an absent one is a no-op, so the
        event is idempotent by construction. Empty sets are pruned.
        """
        if message_id not in self._ids:
            return False

        per_message = self._reactions.get(message_id, {})
        users = per_message.get(reaction_key, set())

        if action is ReactionAction.ADD:
            if user_id in users:
                return False
            self._reactions.setdefault(message_id, {}).setdefault(reaction_key, set()).add(user_id)
        else:
            if user_id not in users:
                return False
            users.discard(user_id)
            if not users:
                del per_message[reaction_key]
            if not per_message:
                del self._reactions[message_id]

        self._bump()
        return True

    def apply_pin_event(self, message_id: str, action: PinAction) -> bool:
        """Pin or unpin a message; same idempotence contract as reactions."""
        if message_id not in self._ids:
            return False
        if action is PinAction.PIN:
            if message_id in self._pinned:
                return False
            self._pinned.add(message_id)
        else:
            if message_id not in self._pinned:
                return False
            self._pinned.discard(message_id)
        self._bump()
        return True

    def apply_read_receipt(
        self,
        reader_id: str,
        last_read_message_id: str,
        acknowledged_sender_id: Optional[str] = None,
    ) -> bool:
        """Mark messages up to ``last_read_message_id`` as read by ``reader_id``.

        Walks the ordered list backward starting at ``last_read_message_id``
        and adds the reader to every message authored by the acknowledged
        sender (the local user by default). Messages by anyone else are
        skipped but do not stop the walk.

        Known edge case: the walk has no lower bound, so with irregularly
        interleaved senders it can mark older messages the reader never
        scrolled to. Marking is monotonic: readers are never removed.
        """
        sender_id = acknowledged_sender_id or self.self_user_id
        if reader_id == sender_id or last_read_message_id not in self._ids:
            return False

        changed = False
        start = self._index_of(last_read_message_id)
        for message in reversed(self._messages[: start + 1]):
            if message.sender_id != sender_id or message.pending:
                continue
            readers = self._read_by.setdefault(message.id, set())
            if reader_id not in readers:
                readers.add(reader_id)
                changed = True

        if changed:
            self._bump()
        return changed

    def apply_typing_start(self, user_id: str, display_name: str, expires_at: float) -> bool:
        """Create or refresh a typing entry."""
        entry = TypingEntry(display_name=display_name, expires_at=expires_at)
        if self._typing.get(user_id) == entry:
            return False
        self._typing[user_id] = entry
        self._bump()
        return True

    def apply_typing_stop(self, user_id: str) -> bool:
        if self._typing.pop(user_id, None) is None:
            return False
        self._bump()
        return True

    def expire_typing(self, now: float) -> List[str]:
        """Drop every typing entry whose expiry has passed. Returns the dropped user ids."""
        expired = [uid for uid, entry in self._typing.items() if entry.expires_at <= now]
        for user_id in expired:
            del self._typing[user_id]
        if expired:
            self._bump()
        return expired

    def apply_presence_sync(self, online_ids: Iterable[str]) -> bool:
        """Replace the online set wholesale."""
        online = set(online_ids)
        if online == self._online:
            return False
        self._online = online
        self._bump()
        return True

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def get_message(self, message_id: str) -> Optional[Message]:
        if message_id not in self._ids:
            return None
        return self._messages[self._index_of(message_id)]

    def has_reacted(self, message_id: str, reaction_key: str, user_id: str) -> bool:
        return user_id in self._reactions.get(message_id, {}).get(reaction_key, set())

    def is_pinned(self, message_id: str) -> bool:
        return message_id in self._pinned

    def get_read_by(self, message_id: str) -> Set[str]:
        return set(self._read_by.get(message_id, set()))

    def typing_users(self, now: Optional[float] = None) -> Dict[str, TypingEntry]:
        """Typing entries, excluding any already past expiry at ``now``."""
        if now is None:
            return dict(self._typing)
        return {uid: e for uid, e in self._typing.items() if e.expires_at > now}

    def snapshot(self, now: Optional[float] = None, **extra) -> RoomSnapshot:
        """Deep copy of the current state for renderers."""
        return RoomSnapshot(
            room_id=self.room_id,
            version=self.version,
            messages=list(self._messages),
            reactions={
                mid: {key: set(users) for key, users in keys.items()}
                for mid, keys in self._reactions.items()
            },
            read_receipts={mid: set(readers) for mid, readers in self._read_by.items()},
            pinned=set(self._pinned),
            typing=self.typing_users(now),
            online=set(self._online),
            **extra,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _bump(self) -> None:
        self.version += 1

    def _index_of(self, message_id: str) -> int:
        for idx, message in enumerate(self._messages):
            if message.id == message_id:
                return idx
        raise KeyError(message_id)

    def _insert_sorted(self, record: Message) -> None:
        # Placeholders stay at the tail; committed records sort among themselves
        committed_count = len(self._messages)
        while committed_count and self._messages[committed_count - 1].pending:
            committed_count -= 1
        keys = [m.sort_key for m in self._messages[:committed_count]]
        self._messages.insert(bisect_right(keys, record.sort_key), record)

    def _drop_placeholder(self, handle: OptimisticHandle) -> None:
        if handle.local_id in self._ids:
            del self._messages[self._index_of(handle.local_id)]
            self._ids.discard(handle.local_id)
            self._purge_indices(handle.local_id)

    def _purge_indices(self, message_id: str) -> None:
        self._reactions.pop(message_id, None)
        self._read_by.pop(message_id, None)
        self._pinned.discard(message_id)
        handle = self._committed.pop(message_id, None)
        if handle is not None:
            handle.state = SendState.REMOVED
