"""Data models for a synchronized chat room.

Messages mirror the rows of the message store (snake_case columns); broadcast
payloads, which travel as camelCase JSON, live in ``events.py``.

Identity rules:
    - A committed Message is immutable and identified by ``id``.
    - A placeholder (``pending=True``) carries a local id and is never matched
      against committed records by content; the send pipeline swaps it through
      the handle returned by the reconciler.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Prefix for ids of local placeholders; never produced by the message store
LOCAL_ID_PREFIX = "local-"

# Content used when a message carries only an image
PHOTO_PLACEHOLDER_TEXT = "📷 Photo"


# =============================================================================
# Enums
# =============================================================================


class ReactionAction(str, Enum):
    """Direction of a reaction broadcast."""
    ADD = "add"
    REMOVE = "remove"


class PinAction(str, Enum):
    """Direction of a pin broadcast."""
    PIN = "pin"
    UNPIN = "unpin"


class SendState(str, Enum):
    """Lifecycle of a locally submitted message.

    Attributes:
        DRAFTING: Text is in the input buffer (also the state after a failed send).
        PENDING_REMOTE: Placeholder visible, store insert in flight.
        COMMITTED: Authoritative record replaced the placeholder.
        REMOVED: A remote delete removed the committed record.
    """
    DRAFTING = "drafting"
    PENDING_REMOTE = "pending_remote"
    COMMITTED = "committed"
    REMOVED = "removed"


# =============================================================================
# Records
# =============================================================================


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Message(BaseModel):
    """A chat message as held in the room's ordered list.

    Attributes:
        id: Store-assigned id, or a ``local-`` id for placeholders.
        room_id: Room the message belongs to.
        sender_id: User id of the author.
        content: Message text.
        image_url: Public URL of an attached image, if any.
        reply_to_id: Id of the message this one replies to, if any.
        created_at: Store timestamp (local send time for placeholders), UTC.
        pending: True only for local optimistic placeholders.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique message ID")
    room_id: str = Field(..., description="Room ID this message belongs to")
    sender_id: str = Field(..., description="User ID of the sender")
    content: str = Field(default="", description="Message text")
    image_url: Optional[str] = Field(default=None, description="Attached image URL")
    reply_to_id: Optional[str] = Field(default=None, description="Replied-to message ID")
    created_at: datetime = Field(..., description="Creation time (UTC)")
    pending: bool = Field(default=False, description="Local optimistic placeholder")

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, v: datetime) -> datetime:
        # Naive timestamps are taken as UTC so ordering never mixes naive and aware
        return _as_utc(v)

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class Draft(BaseModel):
    """Content about to be written to the message store."""
    room_id: str
    sender_id: str
    content: str
    image_url: Optional[str] = None
    reply_to_id: Optional[str] = None

    def to_placeholder(self, created_at: datetime) -> Message:
        return Message(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4()}",
            room_id=self.room_id,
            sender_id=self.sender_id,
            content=self.content,
            image_url=self.image_url,
            reply_to_id=self.reply_to_id,
            created_at=created_at,
            pending=True,
        )


class Attachment(BaseModel):
    """Binary image picked for upload alongside a message."""
    data: bytes
    content_type: str = "image/jpeg"

    @property
    def extension(self) -> str:
        return "png" if self.content_type == "image/png" else "jpg"


class Member(BaseModel):
    """A room roster entry."""
    user_id: str = Field(..., description="Unique user ID")
    display_name: Optional[str] = Field(default=None, description="Full display name")


class TypingEntry(BaseModel):
    """A remote user currently typing."""
    display_name: str = ""
    expires_at: float = Field(..., description="Wall-clock expiry, seconds since epoch")


class RoomSnapshot(BaseModel):
    """Immutable copy of a room's state handed to renderers.

    Attributes:
        room_id: The room.
        version: Incremented on every state change.
        messages: Ordered by (created_at, id); placeholders at the tail.
        reactions: message id -> reaction key -> user ids.
        read_receipts: message id -> reader ids.
        pinned: Pinned message ids.
        typing: user id -> typing entry.
        online: Online user ids from the last presence sync.
        streak: Current mutual activity streak in days.
        connected: Whether the realtime channel is subscribed.
    """
    room_id: str
    version: int = 0
    messages: List[Message] = Field(default_factory=list)
    reactions: Dict[str, Dict[str, Set[str]]] = Field(default_factory=dict)
    read_receipts: Dict[str, Set[str]] = Field(default_factory=dict)
    pinned: Set[str] = Field(default_factory=set)
    typing: Dict[str, TypingEntry] = Field(default_factory=dict)
    online: Set[str] = Field(default_factory=set)
    streak: int = 0
    connected: bool = False
