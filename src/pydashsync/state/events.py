"""Normalized pipeline events.

Raw channel payloads are turned into :class:`ChangeEvent` by the dispatcher;
only the reconciliation store is allowed to merge them.  Connection status
changes travel separately as :class:`ConnectionStatusEvent` so the UI can
tell "the feed is unhealthy" apart from "your last save failed".
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pydashsync.models._base import Record, RecordId


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeSource(StrEnum):
    REMOTE = "remote"
    OPTIMISTIC = "optimistic"


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERRORED = "errored"
    CLOSED = "closed"


class ChannelStatus(StrEnum):
    """Status values reported by a realtime channel."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEvent(BaseModel):
    """A validated, classified change to one record."""

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    topic: str
    record_id: RecordId
    new: Record | None = None
    old: Record | None = None
    source: ChangeSource = ChangeSource.REMOTE
    commit_timestamp: str | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    raw: dict[str, Any] = Field(default_factory=dict, description="Original payload (as received)")

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_sides(self) -> ChangeEvent:
        if self.type in (ChangeType.INSERT, ChangeType.UPDATE) and self.new is None:
            raise ValueError(f"{self.type} event requires the new record")
        return self


class ConnectionStatusEvent(BaseModel):
    """A connection state transition, as reported to status listeners."""

    model_config = ConfigDict(frozen=True)

    topic: str
    state: ConnectionState
    previous: ConnectionState
    attempt: int = 0
    delay: float | None = Field(default=None, description="Scheduled reconnect delay in seconds, if any")
    detail: str | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_live(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_terminal(self) -> bool:
        return self.state == ConnectionState.ERRORED
