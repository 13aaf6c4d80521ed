"""chatsync configuration.

Loads settings from ``chatsync.settings.yaml`` in the working directory.
Every section has usable defaults, so a missing file only produces a warning.

Example::

    typing:
      debounce_seconds: 2
      ttl_seconds: 5
    engagement:
      lookback_days: 60
    room:
      room_id: "general"
      user_id: "u-1"
      display_name: "Ada"
      members:
        - user_id: "u-2"
          display_name: "Joanna"
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatsync.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class TypingSettings(BaseModel):
    """Typing indicator timing.

    The receive-side TTL must outlive the sender's debounce window, because
    the sender's ``isTyping=false`` broadcast may never arrive.
    """
    debounce_seconds:       float = Field(default=2.0, gt=0)
    ttl_seconds:            float = Field(default=5.0, gt=0)
    sweep_interval_seconds: float = Field(default=1.0, gt=0)

    @model_validator(mode="after")
    def _ttl_exceeds_debounce(self) -> "TypingSettings":
        if self.ttl_seconds <= self.debounce_seconds:
            raise ValueError("typing.ttl_seconds must be greater than typing.debounce_seconds")
        return self


class EngagementSettings(BaseModel):
    """Mutual activity streak. Calendar days are always bucketed in UTC."""
    lookback_days:        int = Field(default=60, ge=1)
    min_distinct_senders: int = Field(default=2, ge=1)


class MentionSettings(BaseModel):
    max_results: int = Field(default=5, ge=1)


class ChannelSettings(BaseModel):
    retry_backoff_seconds: float = Field(default=3.0, gt=0)
    auto_read_receipts:    bool  = True


class ContentSettings(BaseModel):
    base_url:        str   = "http://localhost:54321/storage/v1"
    bucket:          str   = "chat-images"
    timeout_seconds: float = 30.0

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class RoomMemberSettings(BaseModel):
    user_id:      str
    display_name: Optional[str] = None


class RoomSessionSettings(BaseModel):
    """Identity and initial roster of the locally served room session."""
    room_id:      str = "lobby"
    user_id:      str = "local-user"
    display_name: str = "Me"
    members:      List[RoomMemberSettings] = Field(default_factory=list)


class AppSettings(BaseModel):
    server:     ServerSettings      = Field(default_factory=ServerSettings)
    logging:    LoggingSettings     = Field(default_factory=LoggingSettings)
    typing:     TypingSettings      = Field(default_factory=TypingSettings)
    engagement: EngagementSettings  = Field(default_factory=EngagementSettings)
    mentions:   MentionSettings     = Field(default_factory=MentionSettings)
    channel:    ChannelSettings     = Field(default_factory=ChannelSettings)
    content:    ContentSettings     = Field(default_factory=ContentSettings)
    room:       RoomSessionSettings = Field(default_factory=RoomSessionSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load ``chatsync.settings.yaml`` (or ``path``) into an *AppSettings* object."""
    settings_data = _load_yaml(path or SETTINGS_FILE)
    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (room=%s, typing.ttl=%ss, engagement.lookback=%sd)",
        app_settings.room.room_id,
        app_settings.typing.ttl_seconds,
        app_settings.engagement.lookback_days,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop cached settings (for testing)."""
    global _config
    _config = None
