"""Typing indicator lifecycle.

Send side (local user):
    Each keystroke broadcasts ``isTyping=true`` at most once per debounce
    window and (re)arms a single stop timer. If no keystroke arrives before
    the timer fires, ``isTyping=false`` is broadcast. The timer is reset on
    every keystroke, never stacked.

Receive side (remote users), per user:

    Idle   --true-->                               Typing(expires_at)
    Typing --true-->                               Typing(expires_at')   refresh
    Typing --false | TTL elapsed | message-->      Idle

The TTL sweep runs on the scheduler regardless of whether anything renders
the indicator, so a dropped stop event can never leave a user typing forever.
"""
import logging
from typing import Callable, Optional

from chatsync.room.events import TypingEvent
from chatsync.room.reconciler import RoomStateReconciler
from chatsync.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_TTL_SECONDS = 5.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 1.0


class TypingLifecycleManager:
    """Derives typing state from broadcasts plus local debouncing.

    Args:
        reconciler: Owner of the TypingSet.
        scheduler: Clock and timers.
        publish: Fire-and-forget sink for the local user's typing events.
        self_user_id: Local user id; remote events from it are ignored.
        self_display_name: Sent as ``userName`` in local typing events.
        on_change: Called after any change to the TypingSet.
    """

    def __init__(
        self,
        reconciler: RoomStateReconciler,
        scheduler: Scheduler,
        publish: Callable[[TypingEvent], None],
        self_user_id: str,
        self_display_name: str,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self._reconciler = reconciler
        self._scheduler = scheduler
        self._publish = publish
        self._self_user_id = self_user_id
        self._self_display_name = self_display_name
        self.debounce_seconds = debounce_seconds
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._on_change = on_change

        self._stop_timer: Optional[TimerHandle] = None
        self._sweep_timer: Optional[TimerHandle] = None
        self._sweeping = False
        self._last_start_sent_at: Optional[float] = None

    # =========================================================================
    # Local send side
    # =========================================================================

    @property
    def is_local_typing(self) -> bool:
        return self._last_start_sent_at is not None

    def on_local_keystroke(self) -> None:
        """Record a keystroke in the local input."""
        now = self._scheduler.now()
        if (
            self._last_start_sent_at is None
            or now - self._last_start_sent_at >= self.debounce_seconds
        ):
            # Re-sending once per window keeps remote TTLs alive during long bursts
            self._last_start_sent_at = now
            self._send(True)

        if self._stop_timer is not None:
            self._stop_timer.cancel()
        self._stop_timer = self._scheduler.call_later(self.debounce_seconds, self._on_debounce_elapsed)

    def stop_local_typing(self) -> None:
        """Broadcast ``isTyping=false`` now (e.g. on submit) if a start was sent."""
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None
        if self._last_start_sent_at is not None:
            self._last_start_sent_at = None
            self._send(False)

    def _on_debounce_elapsed(self) -> None:
        self._stop_timer = None
        if self._last_start_sent_at is not None:
            self._last_start_sent_at = None
            self._send(False)

    def _send(self, is_typing: bool) -> None:
        event = TypingEvent(
            userId=self._self_user_id,
            userName=self._self_display_name,
            isTyping=is_typing,
        )
        try:
            self._publish(event)
        except Exception as e:
            logger.warning(f"[Typing] Failed to publish typing={is_typing}: {e}")

    # =========================================================================
    # Remote receive side
    # =========================================================================

    def apply_remote(self, event: TypingEvent) -> bool:
        """Apply a typing broadcast from another user."""
        if event.userId == self._self_user_id:
            return False
        if event.isTyping:
            changed = self._reconciler.apply_typing_start(
                event.userId, event.userName, self._scheduler.now() + self.ttl_seconds
            )
        else:
            changed = self._reconciler.apply_typing_stop(event.userId)
        if changed:
            self._notify()
        return changed

    def sweep(self) -> bool:
        """Expire typing entries past their TTL."""
        expired = self._reconciler.expire_typing(self._scheduler.now())
        if expired:
            logger.debug(f"[Typing] Expired typing for {expired}")
            self._notify()
        return bool(expired)

    def start(self) -> None:
        """Start the periodic TTL sweep."""
        if not self._sweeping:
            self._sweeping = True
            self._sweep_timer = self._scheduler.call_later(self.sweep_interval_seconds, self._sweep_tick)

    def stop(self) -> None:
        """Stop the sweep and the local stop timer."""
        self._sweeping = False
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _sweep_tick(self) -> None:
        try:
            self.sweep()
        finally:
            if self._sweeping:
                self._sweep_timer = self._scheduler.call_later(self.sweep_interval_seconds, self._sweep_tick)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
