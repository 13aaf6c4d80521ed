"""Adapters for the external services a room session depends on."""
from .base import BroadcastChannel, ContentStore, MessageStore, PresenceChannel
from .http_content import HttpContentStore
from .memory import (
    InMemoryBroadcastChannel,
    InMemoryBroadcastHub,
    InMemoryContentStore,
    InMemoryMessageStore,
    InMemoryPresenceChannel,
    InMemoryPresenceHub,
)

__all__ = [
    "BroadcastChannel",
    "ContentStore",
    "MessageStore",
    "PresenceChannel",
    "HttpContentStore",
    "InMemoryBroadcastChannel",
    "InMemoryBroadcastHub",
    "InMemoryContentStore",
    "InMemoryMessageStore",
    "InMemoryPresenceChannel",
    "InMemoryPresenceHub",
]
