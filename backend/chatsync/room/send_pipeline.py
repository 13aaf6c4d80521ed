"""Optimistic send pipeline.

Coordinates a local draft through to a committed message:

    Drafting --submit--> PendingRemote --success--> Committed --remote delete--> Removed
                         PendingRemote --failure--> Drafting (text restored)

On submit the input buffer is cleared immediately. An attached image is
uploaded first; an upload failure is reported but the text still goes out
on its own. A placeholder is then shown while the store insert is in flight.
On success the store's record (server id and timestamp) replaces the
placeholder through the reconciler handle. On failure the placeholder is
removed, the original text goes back into the input buffer, and the error
propagates to the caller. Nothing is retried automatically.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from chatsync.adapters.base import ContentStore, MessageStore
from chatsync.errors import PersistenceWriteError, UploadError
from chatsync.room.models import PHOTO_PLACEHOLDER_TEXT, Attachment, Draft, Message
from chatsync.room.reconciler import OptimisticHandle, RoomStateReconciler
from chatsync.scheduler import Scheduler

logger = logging.getLogger(__name__)


class InputBuffer:
    """The composer's text, shared by the session and the send pipeline."""

    def __init__(self, text: str = "") -> None:
        self.text = text

    def set(self, text: str) -> None:
        self.text = text

    def clear(self) -> None:
        self.text = ""


@dataclass
class SendResult:
    """Outcome of a submit that did not raise.

    Attributes:
        message: The committed record, or None when there was nothing to send.
        upload_error: Set when the attachment upload failed.
    """
    message: Optional[Message] = None
    upload_error: Optional[UploadError] = None


class OptimisticSendPipeline:
    """Drives one local submission at a time through draft, upload, and commit.

    Args:
        room_id: Room to post into.
        sender_id: Local user id.
        store: Message store for the insert.
        content_store: Upload target for attachments; None disables images.
        reconciler: Holds the placeholder while the insert is pending.
        input_buffer: Cleared on submit and restored on failure.
        scheduler: Clock for placeholder timestamps and object names.
        on_change: Called whenever the reconciler state was changed.
    """

    def __init__(
        self,
        room_id: str,
        sender_id: str,
        store: MessageStore,
        content_store: Optional[ContentStore],
        reconciler: RoomStateReconciler,
        input_buffer: InputBuffer,
        scheduler: Scheduler,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.room_id = room_id
        self.sender_id = sender_id
        self._store = store
        self._content_store = content_store
        self._reconciler = reconciler
        self._input = input_buffer
        self._scheduler = scheduler
        self._on_change = on_change
        self._pending: List[OptimisticHandle] = []

    @property
    def pending(self) -> int:
        """Number of submissions waiting on the store."""
        return len(self._pending)

    def object_name(self, attachment: Attachment) -> str:
        """``{roomId}/{epochMillis}_{userId}.{ext}``"""
        millis = int(self._scheduler.now() * 1000)
        return f"{self.room_id}/{millis}_{self.sender_id}.{attachment.extension}"

    async def submit(
        self,
        attachment: Optional[Attachment] = None,
        reply_to_id: Optional[str] = None,
    ) -> SendResult:
        """Send the current input buffer (plus an optional image).

        Returns:
            SendResult with the committed message, or an empty result when
            there was nothing to send.

        Raises:
            PersistenceWriteError: The store insert failed. The placeholder
                has been removed and the text restored to the input buffer.
        """
        content = self._input.text.strip()
        if not content and attachment is None:
            return SendResult()
        self._input.clear()

        image_url: Optional[str] = None
        upload_error: Optional[UploadError] = None
        if attachment is not None:
            image_url, upload_error = await self._upload(attachment)

        if not content and image_url is None:
            # Image-only message whose upload failed: nothing left to send
            return SendResult(upload_error=upload_error)

        draft = Draft(
            room_id=self.room_id,
            sender_id=self.sender_id,
            content=content or PHOTO_PLACEHOLDER_TEXT,
            image_url=image_url,
            reply_to_id=reply_to_id,
        )
        handle = self._reconciler.apply_optimistic_insert(draft, self._scheduler.utcnow())
        self._pending.append(handle)
        self._notify()

        try:
            record = await self._store.insert(draft)
        except Exception as e:
            self._pending.remove(handle)
            self._reconciler.discard_optimistic(handle)
            self._input.set(content)
            self._notify()
            logger.warning(f"[Send] Insert failed in room {self.room_id}, text restored: {e}")
            if isinstance(e, PersistenceWriteError):
                raise
            raise PersistenceWriteError(str(e)) from e

        self._pending.remove(handle)
        self._reconciler.commit_optimistic(handle, record)
        self._notify()
        logger.info(f"[Send] Committed message {record.id} in room {self.room_id}")
        return SendResult(message=record, upload_error=upload_error)

    async def _upload(self, attachment: Attachment):
        if self._content_store is None:
            return None, UploadError("no content store configured")
        try:
            try:
                url = await self._content_store.upload(
                    attachment.data, attachment.content_type, self.object_name(attachment)
                )
            except UploadError:
                raise
            except Exception as e:
                raise UploadError(f"{type(e).__name__}: {e}") from e
        except UploadError as e:
            logger.warning(f"[Send] Image upload failed, sending text only: {e}")
            return None, e
        return url, None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
