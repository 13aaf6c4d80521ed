"""Pydantic schemas for the session HTTP API."""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from chatsync.room.models import Member, Message


class InputChange(BaseModel):
    """Request body for the text-change hook."""
    text: str = Field(default="", max_length=4000)


class MentionCandidates(BaseModel):
    candidates: List[Member] = Field(default_factory=list)


class MentionSelect(BaseModel):
    userId: str = Field(..., min_length=1)


class InputText(BaseModel):
    text: str


class SendRequest(BaseModel):
    """Request body for sending a message.

    When ``text`` is given it replaces the input buffer before sending;
    otherwise the current buffer is sent.
    """
    text: Optional[str] = Field(default=None, max_length=4000)
    replyToId: Optional[str] = None
    imageBase64: Optional[str] = None
    contentType: Literal["image/jpeg", "image/png"] = "image/jpeg"


class SendResponse(BaseModel):
    message: Optional[Message] = None
    uploadError: Optional[str] = None


class ReactionToggle(BaseModel):
    messageId: str = Field(..., min_length=1)
    reactionKey: str = Field(..., min_length=1)


class PinToggle(BaseModel):
    messageId: str = Field(..., min_length=1)


class ToggleResponse(BaseModel):
    messageId: str
    active: bool


class MessageList(BaseModel):
    messages: List[Message] = Field(default_factory=list)


class Roster(BaseModel):
    members: List[Member] = Field(default_factory=list)
