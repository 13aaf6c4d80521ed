"""Room session: the single owner of one active room's state.

A RoomSession wires the reconciler, typing lifecycle, mention resolver,
engagement analyzer and send pipeline to the four external adapters, and
serializes every inbound event through one asyncio queue consumed by one
task. Nothing else mutates the room state.

Event sources:
    - message store change feed (INSERT / DELETE)
    - broadcast channel (typing, reaction, read_receipt, pin_message)
    - presence channel (full online-set sync)
    - channel status (drops trigger reconnect + full resync)

Asynchronous work (record hydration, resync and roster queries, streaks)
runs in background tasks that post their results back into the queue
instead of touching state directly. Adapter callbacks may arrive from any
thread; they are marshalled onto the session's loop.

Reconnection:
    Broadcast events are ephemeral and are not redelivered after a drop.
    After re-subscribing, the session re-tracks presence and re-queries the
    message list, but reactions, read receipts and pins derived only from
    broadcasts may lag until new events arrive.

Thread Safety:
    Public methods must be called from the event loop the session was
    started on.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Coroutine, List, Optional, Set

from chatsync.adapters.base import (
    BroadcastChannel,
    ContentStore,
    MessageStore,
    PresenceChannel,
    Unsubscribe,
)
from chatsync.config import AppSettings
from chatsync.errors import MalformedEventError, TransientChannelError
from chatsync.room.engagement import EngagementAnalyzer
from chatsync.room.events import (
    KNOWN_BROADCAST_EVENTS,
    ChangeEvent,
    ChangeKind,
    ChannelStatus,
    PinEvent,
    ReactionEvent,
    ReadReceiptEvent,
    TypingEvent,
    parse_broadcast,
    read_receipt_for,
)
from chatsync.room.mentions import MentionResolver
from chatsync.room.models import (
    Attachment,
    Member,
    Message,
    PinAction,
    ReactionAction,
    RoomSnapshot,
)
from chatsync.room.reconciler import RoomStateReconciler
from chatsync.room.send_pipeline import InputBuffer, OptimisticSendPipeline, SendResult
from chatsync.room.typing_indicator import TypingLifecycleManager
from chatsync.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[RoomSnapshot], None]


@dataclass
class _Envelope:
    """One unit of work for the session's consumer task."""
    kind: str
    data: Any = None
    event_name: str = ""


class RoomSession:
    """Owns and synchronizes the state of one chat room for the local user.

    Args:
        room_id: The room.
        me: The local user.
        store: Message store adapter.
        broadcast: Broadcast channel adapter for this room.
        presence: Presence channel adapter for this room.
        content_store: Attachment upload adapter (optional).
        scheduler: Clock and timers; defaults to the asyncio loop.
        settings: Timing and limits; defaults to ``AppSettings()``.
    """

    def __init__(
        self,
        room_id: str,
        me: Member,
        store: MessageStore,
        broadcast: BroadcastChannel,
        presence: PresenceChannel,
        content_store: Optional[ContentStore] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.room_id = room_id
        self.me = me
        self._store = store
        self._broadcast = broadcast
        self._presence = presence
        self._scheduler = scheduler or AsyncioScheduler()
        self._settings = settings or AppSettings()

        self.reconciler = RoomStateReconciler(room_id, me.user_id)
        self.input = InputBuffer()
        self.typing = TypingLifecycleManager(
            self.reconciler,
            self._scheduler,
            publish=self._publish_broadcast,
            self_user_id=me.user_id,
            self_display_name=me.display_name or "",
            debounce_seconds=self._settings.typing.debounce_seconds,
            ttl_seconds=self._settings.typing.ttl_seconds,
            sweep_interval_seconds=self._settings.typing.sweep_interval_seconds,
            on_change=self._publish,
        )
        self.mentions = MentionResolver(me.user_id, self._settings.mentions.max_results)
        self.engagement = EngagementAnalyzer(
            self._settings.engagement.lookback_days,
            self._settings.engagement.min_distinct_senders,
        )
        self.pipeline = OptimisticSendPipeline(
            room_id,
            me.user_id,
            store,
            content_store,
            self.reconciler,
            self.input,
            self._scheduler,
            on_change=self._publish,
        )

        self._roster: List[Member] = []
        self._listeners: List[SnapshotListener] = []
        self._streak = 0
        self._connected = False
        self._meta_version = 0
        self._last_read_sent: Optional[str] = None

        # Own change-feed inserts and resync results held back while a local
        # send is pending
        self._deferred_inserts: List[Message] = []
        self._deferred_history: Optional[List[Message]] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribers: List[Unsubscribe] = []
        self._reconnecting = False
        # Bumped on every non-SUBSCRIBED status, from the adapter's context
        self._drops = 0
        self._started = False
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to every source, load history and roster, and connect the channel."""
        if self._started:
            return
        self._started = True
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()

        self._unsubscribers = [
            self._store.subscribe_changes(self.room_id, partial(self._post, "change")),
            self._broadcast.on_status(self._on_status),
            self._presence.subscribe(partial(self._post, "presence")),
        ]
        for event_name in KNOWN_BROADCAST_EVENTS:
            self._unsubscribers.append(
                self._broadcast.subscribe(event_name, partial(self._on_broadcast, event_name))
            )

        self._consumer = self._loop.create_task(self._run())
        self.typing.start()

        try:
            records = await self._store.query(self.room_id)
            self._post("history", records)
        except Exception as e:
            logger.warning(f"[Session] Initial history load failed for room {self.room_id}: {e}")
        try:
            self._roster = list(await self._store.members(self.room_id))
        except Exception as e:
            logger.warning(f"[Session] Roster load failed for room {self.room_id}: {e}")

        self._reconnecting = True
        self._spawn(self._connect_loop(resync=False, delay_first=False))
        self._spawn(self._refresh_streak())
        logger.info(f"[Session] Started room {self.room_id} as {self.me.user_id}")

    async def close(self) -> None:
        """Leave the room: stop timers, unsubscribe, untrack presence, close the channel."""
        if self._closed:
            return
        self._closed = True
        self.typing.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        tasks = list(self._background)
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._presence.untrack()
        except Exception as e:
            logger.warning(f"[Session] Presence untrack failed: {e}")
        try:
            await self._broadcast.close()
        except Exception as e:
            logger.warning(f"[Session] Channel close failed: {e}")
        self._connected = False
        logger.info(f"[Session] Closed room {self.room_id}")

    async def drain(self) -> None:
        """Wait until queued events and background work have been processed."""
        if self._inbox is None:
            return
        while True:
            await self._inbox.join()
            pending = [t for t in self._background if not t.done()]
            if not pending:
                if self._inbox.empty():
                    return
                continue
            await asyncio.wait(pending)

    # =========================================================================
    # Outward interface
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def streak(self) -> int:
        return self._streak

    @property
    def roster(self) -> List[Member]:
        return list(self._roster)

    def set_roster(self, members: List[Member]) -> None:
        self._roster = list(members)

    def snapshot(self) -> RoomSnapshot:
        snap = self.reconciler.snapshot(
            now=self._scheduler.now(), streak=self._streak, connected=self._connected
        )
        return snap.model_copy(update={"version": self.reconciler.version + self._meta_version})

    def subscribe(self, listener: SnapshotListener) -> Unsubscribe:
        """Call ``listener`` with a fresh snapshot after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    @property
    def input_text(self) -> str:
        return self.input.text

    def on_text_changed(self, text: str) -> List[Member]:
        """Text-change hook: feeds typing state and returns mention candidates."""
        self.input.set(text)
        if text:
            self.typing.on_local_keystroke()
        return self.mentions.candidates(text, self._roster)

    def select_mention(self, member: Member) -> str:
        """Replace the trailing ``@token`` with the member's full name."""
        self.input.set(self.mentions.apply_selection(self.input.text, member))
        return self.input.text

    async def send(
        self, attachment: Optional[Attachment] = None, reply_to_id: Optional[str] = None
    ) -> SendResult:
        """Submit the input buffer through the optimistic send pipeline.

        Raises:
            PersistenceWriteError: The insert failed; the text is back in the input.
        """
        self.typing.stop_local_typing()
        try:
            result = await self.pipeline.submit(attachment=attachment, reply_to_id=reply_to_id)
        finally:
            self._flush_deferred_inserts()
        if result.message is not None:
            self._after_messages_changed()
            self._spawn(self._refresh_streak())
        return result

    def toggle_reaction(self, message_id: str, reaction_key: str) -> bool:
        """Add or remove the local user's reaction and broadcast it."""
        message = self.reconciler.get_message(message_id)
        if message is None or message.pending:
            return False
        has_reacted = self.reconciler.has_reacted(message_id, reaction_key, self.me.user_id)
        event = ReactionEvent(
            messageId=message_id,
            reactionKey=reaction_key,
            reactorId=self.me.user_id,
            action=ReactionAction.REMOVE if has_reacted else ReactionAction.ADD,
        )
        self._publish_broadcast(event)
        if self.reconciler.apply_reaction_event(message_id, reaction_key, self.me.user_id, event.action):
            self._publish()
        return True

    def toggle_pin(self, message_id: str) -> bool:
        """Pin or unpin a message locally and broadcast it."""
        message = self.reconciler.get_message(message_id)
        if message is None or message.pending:
            return False
        action = PinAction.UNPIN if self.reconciler.is_pinned(message_id) else PinAction.PIN
        self._publish_broadcast(PinEvent(messageId=message_id, action=action))
        if self.reconciler.apply_pin_event(message_id, action):
            self._publish()
        return True

    async def delete_message(self, message_id: str) -> bool:
        """Delete one of the local user's own committed messages.

        Returns False (and does nothing) for unknown, pending or foreign
        messages.

        Raises:
            PersistenceWriteError: The store rejected the delete; nothing changed locally.
        """
        message = self.reconciler.get_message(message_id)
        if message is None or message.pending or message.sender_id != self.me.user_id:
            return False
        await self._store.delete(message_id)
        if self.reconciler.apply_remote_delete(message_id):
            self._publish()
        return True

    def get_message(self, message_id: str) -> Optional[Message]:
        return self.reconciler.get_message(message_id)

    def pinned_messages(self) -> List[Message]:
        return [m for m in self.reconciler.messages if self.reconciler.is_pinned(m.id)]

    def search(self, query: str) -> List[Message]:
        """Messages whose content or sender name contains ``query`` (case-insensitive)."""
        q = query.strip().lower()
        if not q:
            return []
        names = {m.user_id: (m.display_name or "").lower() for m in self._roster}
        return [
            m for m in self.reconciler.messages
            if q in m.content.lower() or q in names.get(m.sender_id, "")
        ]

    # =========================================================================
    # Inbound events
    # =========================================================================

    def _on_status(self, status: ChannelStatus) -> None:
        if status != ChannelStatus.SUBSCRIBED:
            self._drops += 1
        self._post("status", status)

    def _on_broadcast(self, event_name: str, payload: Any) -> None:
        self._post("broadcast", payload, event_name=event_name)

    def _post(self, kind: str, data: Any = None, event_name: str = "") -> None:
        if self._closed or self._inbox is None or self._loop is None:
            return
        envelope = _Envelope(kind=kind, data=data, event_name=event_name)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._inbox.put_nowait(envelope)
        else:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, envelope)

    async def _run(self) -> None:
        while True:
            envelope = await self._inbox.get()
            try:
                self._dispatch(envelope)
            except MalformedEventError as e:
                logger.warning(f"[Session] Dropped event in room {self.room_id}: {e}")
            except Exception:
                logger.exception(f"[Session] Handler for '{envelope.kind}' failed in room {self.room_id}")
            finally:
                self._inbox.task_done()

    def _dispatch(self, envelope: _Envelope) -> None:
        kind = envelope.kind
        if kind == "change":
            self._handle_change(envelope.data)
        elif kind == "broadcast":
            self._handle_broadcast(parse_broadcast(envelope.event_name, envelope.data))
        elif kind == "presence":
            if self.reconciler.apply_presence_sync(envelope.data):
                self._publish()
        elif kind == "history":
            if self.pipeline.pending:
                # May already hold the pending send's record
                self._deferred_history = envelope.data
            else:
                self._apply_history(envelope.data)
        elif kind == "roster":
            self._roster = list(envelope.data)
        elif kind == "status":
            self._handle_status(ChannelStatus(envelope.data))
        elif kind == "connected":
            self._set_connected(True)
            self._after_messages_changed()
        elif kind == "streak":
            if envelope.data != self._streak:
                self._streak = envelope.data
                self._meta_version += 1
                self._publish()
        else:
            logger.warning(f"[Session] Unknown envelope kind '{kind}'")

    def _handle_change(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.DELETE:
            if self.reconciler.apply_remote_delete(event.message_id):
                self._publish()
            return

        if event.record is None:
            self._spawn(self._hydrate(event.message_id))
            return

        record = event.record
        if record.sender_id == self.me.user_id and self.pipeline.pending:
            self._deferred_inserts.append(record)
            return
        if self.reconciler.apply_remote_insert(record):
            self._publish()
            self._after_messages_changed()

    def _handle_broadcast(self, event) -> None:
        changed = False
        if isinstance(event, TypingEvent):
            # The typing manager publishes its own changes
            self.typing.apply_remote(event)
            return
        if isinstance(event, ReactionEvent):
            changed = self.reconciler.apply_reaction_event(
                event.messageId, event.reactionKey, event.reactorId, event.action
            )
        elif isinstance(event, ReadReceiptEvent):
            if event.readerId != self.me.user_id:
                changed = self.reconciler.apply_read_receipt(event.readerId, event.lastReadMessageId)
        elif isinstance(event, PinEvent):
            changed = self.reconciler.apply_pin_event(event.messageId, event.action)
        if changed:
            self._publish()

    def _handle_status(self, status: ChannelStatus) -> None:
        if status is ChannelStatus.SUBSCRIBED:
            return
        logger.warning(f"[Session] Channel {status.value} in room {self.room_id}")
        self._set_connected(False)
        if not self._reconnecting and not self._closed:
            self._reconnecting = True
            self._spawn(self._connect_loop(resync=True, delay_first=True))

    # =========================================================================
    # Background work
    # =========================================================================

    async def _connect_loop(self, resync: bool, delay_first: bool) -> None:
        """Subscribe until a connection survives presence tracking and resync.

        A drop reported after ``connect`` returned but before the session is
        marked connected starts another attempt; ``_handle_status`` does not
        spawn a second loop while this one runs.
        """
        backoff = self._settings.channel.retry_backoff_seconds
        attempt = 0
        try:
            while not self._closed:
                if delay_first:
                    await self._scheduler.sleep(backoff)
                    if self._closed:
                        return
                delay_first = True
                attempt += 1
                try:
                    await self._broadcast.connect()
                except TransientChannelError as e:
                    logger.warning(
                        f"[Session] Subscribe attempt {attempt} failed for room {self.room_id}: {e}; "
                        f"retrying in {backoff}s"
                    )
                    continue
                drops = self._drops

                try:
                    await self._presence.track({
                        "userId": self.me.user_id,
                        "userName": self.me.display_name or "",
                        "online_at": self._scheduler.utcnow().isoformat(),
                    })
                except Exception as e:
                    logger.warning(f"[Session] Presence track failed: {e}")

                if resync:
                    logger.info(f"[Session] Resyncing room {self.room_id} after reconnect")
                    try:
                        self._post("history", await self._store.query(self.room_id))
                    except Exception as e:
                        logger.warning(f"[Session] Resync query failed for room {self.room_id}: {e}")
                    self._spawn(self._load_roster())
                    self._spawn(self._refresh_streak())

                if self._drops != drops:
                    logger.warning(
                        f"[Session] Channel dropped again while reconnecting room {self.room_id}; "
                        f"retrying in {backoff}s"
                    )
                    resync = True
                    continue

                self._post("connected")
                return
        finally:
            self._reconnecting = False

    async def _hydrate(self, message_id: str) -> None:
        record = await self._store.get(message_id)
        if record is None:
            logger.debug(f"[Session] Hydration found no record for {message_id}")
            return
        self._post("change", ChangeEvent.insert(record))

    async def _load_roster(self) -> None:
        try:
            members = await self._store.members(self.room_id)
        except Exception as e:
            logger.warning(f"[Session] Roster query failed for room {self.room_id}: {e}")
            return
        self._post("roster", members)

    async def _refresh_streak(self) -> None:
        now = self._scheduler.utcnow()
        try:
            records = await self._store.query(self.room_id, since=self.engagement.window_start(now))
        except Exception as e:
            logger.warning(f"[Session] Streak query failed for room {self.room_id}: {e}")
            return
        self._post("streak", self.engagement.streak(((m.sender_id, m.created_at) for m in records), now))

    def _spawn(self, coro: Coroutine) -> Optional[asyncio.Task]:
        if self._loop is None or self._closed:
            coro.close()
            return None
        task = self._loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Session] Background task failed in room {self.room_id}: {exc!r}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _flush_deferred_inserts(self) -> None:
        if self.pipeline.pending:
            return
        history, self._deferred_history = self._deferred_history, None
        if history is not None:
            self._apply_history(history)
        if not self._deferred_inserts:
            return
        deferred, self._deferred_inserts = self._deferred_inserts, []
        changed = False
        for record in deferred:
            changed = self.reconciler.apply_remote_insert(record) or changed
        if changed:
            self._publish()
            self._after_messages_changed()

    def _apply_history(self, records: List[Message]) -> None:
        if self.reconciler.load_history(records):
            self._publish()
        self._after_messages_changed()

    def _after_messages_changed(self) -> None:
        """Send a read receipt for the newest message from someone else, once."""
        if not self._settings.channel.auto_read_receipts or not self._connected:
            return
        latest = None
        for message in reversed(self.reconciler.messages):
            if not message.pending and message.sender_id != self.me.user_id:
                latest = message
                break
        if latest is None or latest.id == self._last_read_sent:
            return
        self._last_read_sent = latest.id
        self._publish_broadcast(
            read_receipt_for(self.room_id, latest.id, self.me.user_id, self._scheduler.utcnow())
        )

    def _set_connected(self, connected: bool) -> None:
        if connected != self._connected:
            self._connected = connected
            self._meta_version += 1
            self._publish()

    def _publish_broadcast(self, event) -> None:
        """Fire-and-forget send; dropped while the channel is not subscribed."""
        if not self._connected:
            logger.debug(f"[Session] Not connected, dropping outgoing '{event.kind}'")
            return
        self._spawn(self._broadcast.send(event.kind, event.to_payload()))

    def _publish(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("[Session] Snapshot listener failed")
