"""Error types raised by the room synchronization core.

None of these is allowed to escape an inbound event handler: the session logs
and drops them so that one bad event cannot take down the hosting process.

Hierarchy:
    ChatSyncError
        TransientChannelError  - subscription drop or timeout; retried with fixed backoff
        PersistenceWriteError  - message store insert/delete failed; surfaced, never retried
        UploadError            - content upload failed; the text send still goes ahead
        MalformedEventError    - broadcast payload did not match a known shape; dropped
"""


class ChatSyncError(Exception):
    """Base class for all chatsync errors."""


class TransientChannelError(ChatSyncError):
    """The realtime channel dropped or timed out and should be re-subscribed."""


class PersistenceWriteError(ChatSyncError):
    """A write to the message store failed."""


class UploadError(ChatSyncError):
    """An attachment upload to the content store failed."""


class MalformedEventError(ChatSyncError):
    """A broadcast event payload was rejected at the channel boundary."""

    def __init__(self, event_name: str, reason: str) -> None:
        super().__init__(f"Malformed '{event_name}' event: {reason}")
        self.event_name = event_name
        self.reason = reason
