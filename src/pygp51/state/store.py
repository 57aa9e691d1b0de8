"""Deterministic in-memory position store.

This is the only component allowed to merge incoming position events.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

from pygp51.models.position import Position
from pygp51.state.events import PositionEvent, PositionSource


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PositionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: Position
    source: PositionSource
    observed_at: datetime


class PositionStore:
    """Latest position per device.

    Merge policy is last-write-wins by arrival: every applied event
    replaces whatever was stored for its device. Given the same sequence of
    events the store always ends up with the same snapshot.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, PositionEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._entries

    def apply(self, event: PositionEvent) -> None:
        """Apply a normalized position event."""
        self._entries[event.device_id] = PositionEntry(
            position=event.position,
            source=event.source,
            observed_at=event.observed_at,
        )

    def apply_position(self, position: Position, source: PositionSource) -> None:
        self.apply(PositionEvent(position=position, source=source, observed_at=self._clock()))

    def get(self, device_id: str) -> Position | None:
        entry = self._entries.get(device_id)
        return entry.position if entry is not None else None

    def entry(self, device_id: str) -> PositionEntry | None:
        return self._entries.get(device_id)

    def snapshot(self) -> dict[str, Position]:
        """Copy of the current device-id to position map."""
        return {device_id: entry.position for device_id, entry in self._entries.items()}

    def retain(self, device_ids: Iterable[str]) -> list[str]:
        """Drop every device not in *device_ids*; return the dropped ids."""
        keep = set(device_ids)
        dropped = [device_id for device_id in self._entries if device_id not in keep]
        for device_id in dropped:
            del self._entries[device_id]
        return dropped

    def clear(self) -> None:
        self._entries.clear()
