"""Events entering a room session.

Broadcast payloads arrive untyped, keyed only by event name. They are
validated here, at the channel boundary, into a tagged union so the
reconciler only ever sees well-formed events:

    typing        {userId, userName, isTyping}
    reaction      {messageId, reactionKey, reactorId, action}
    read_receipt  {lastReadMessageId, readerId}
    pin_message   {messageId, action}

Unknown fields (``roomId``, ``timestamp`` sent by some clients) are ignored.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError

from chatsync.errors import MalformedEventError
from chatsync.room.models import Message, PinAction, ReactionAction

# Broadcast event names
TYPING_EVENT = "typing"
REACTION_EVENT = "reaction"
READ_RECEIPT_EVENT = "read_receipt"
PIN_EVENT = "pin_message"


class _BroadcastModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        """Wire payload (the tag travels as the event name, not in the body)."""
        return self.model_dump(mode="json", exclude={"kind"}, exclude_none=True)


class TypingEvent(_BroadcastModel):
    kind: Literal["typing"] = TYPING_EVENT
    userId: str = Field(..., min_length=1)
    userName: str = ""
    isTyping: StrictBool


class ReactionEvent(_BroadcastModel):
    kind: Literal["reaction"] = REACTION_EVENT
    messageId: str = Field(..., min_length=1)
    reactionKey: str = Field(..., min_length=1)
    reactorId: str = Field(..., min_length=1)
    action: ReactionAction


class ReadReceiptEvent(_BroadcastModel):
    kind: Literal["read_receipt"] = READ_RECEIPT_EVENT
    lastReadMessageId: str = Field(..., min_length=1)
    readerId: str = Field(..., min_length=1)
    roomId: Optional[str] = None
    timestamp: Optional[str] = None


class PinEvent(_BroadcastModel):
    kind: Literal["pin_message"] = PIN_EVENT
    messageId: str = Field(..., min_length=1)
    action: PinAction


BroadcastEvent = Annotated[
    Union[TypingEvent, ReactionEvent, ReadReceiptEvent, PinEvent],
    Field(discriminator="kind"),
]

_broadcast_adapter = TypeAdapter(BroadcastEvent)

KNOWN_BROADCAST_EVENTS = (TYPING_EVENT, REACTION_EVENT, READ_RECEIPT_EVENT, PIN_EVENT)


def parse_broadcast(event_name: str, payload: Any) -> BroadcastEvent:
    """Validate a raw broadcast payload into its typed event.

    Raises:
        MalformedEventError: Unknown event name, non-object payload, or a
            payload that does not match the event's shape.
    """
    if event_name not in KNOWN_BROADCAST_EVENTS:
        raise MalformedEventError(event_name, "unknown event name")
    if not isinstance(payload, dict):
        raise MalformedEventError(event_name, f"payload is {type(payload).__name__}, expected object")
    try:
        return _broadcast_adapter.validate_python({**payload, "kind": event_name})
    except ValidationError as e:
        raise MalformedEventError(event_name, str(e.errors()[0].get("msg", e))) from e


# =============================================================================
# Message store change feed
# =============================================================================


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A message store change scoped to one room.

    INSERT events normally carry the full record. An INSERT carrying only
    ``message_id`` is hydrated from the store before it is applied.
    """
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    message_id: str
    record: Optional[Message] = None

    @classmethod
    def insert(cls, record: Message) -> "ChangeEvent":
        return cls(kind=ChangeKind.INSERT, message_id=record.id, record=record)

    @classmethod
    def delete(cls, message_id: str) -> "ChangeEvent":
        return cls(kind=ChangeKind.DELETE, message_id=message_id)


class ChannelStatus(str, Enum):
    """Realtime channel subscription status."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


def read_receipt_for(room_id: str, last_read_message_id: str, reader_id: str, at: datetime) -> ReadReceiptEvent:
    """Build the outgoing read receipt for ``reader_id``."""
    return ReadReceiptEvent(
        lastReadMessageId=last_read_message_id,
        readerId=reader_id,
        roomId=room_id,
        timestamp=at.isoformat(),
    )
