"""Normalized position events.

Snapshot loads, realtime change notifications and vendor polls all
convert their inputs into these events. Only the state/store layer is
allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pygp51.models.position import Position


class PositionSource(StrEnum):
    SNAPSHOT = "snapshot"
    REALTIME = "realtime"
    POLL = "poll"


class PositionEvent(BaseModel):
    """A position to apply to the store."""

    model_config = ConfigDict(frozen=True)

    position: Position
    source: PositionSource
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def device_id(self) -> str:
        return self.position.device_id
