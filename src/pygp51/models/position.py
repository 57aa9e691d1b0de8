"""Position models (``lastposition`` records and ``live_positions`` rows)."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pygp51._normalize import safe_float, safe_int, safe_str
from pygp51.models._base import Gp51BaseModel, Gp51Timestamp


class Position(Gp51BaseModel):
    """Latest telemetry sample for a device.

    Parses both vendor ``lastposition`` records (``callat``/``callon``,
    epoch-millisecond times) and ``live_positions`` table rows written by
    the ingester (``latitude``/``longitude``, ISO timestamps).
    """

    device_id: str = Field(validation_alias=AliasChoices("deviceid", "device_id"))
    latitude: float | None = Field(default=None, validation_alias=AliasChoices("callat", "lat", "latitude"))
    longitude: float | None = Field(default=None, validation_alias=AliasChoices("callon", "lon", "lng", "longitude"))
    speed: float | None = Field(default=None, validation_alias=AliasChoices("speed"))
    course: float | None = Field(default=None, validation_alias=AliasChoices("course", "heading"))
    altitude: float | None = Field(default=None, validation_alias=AliasChoices("altitude"))
    radius: float | None = Field(default=None, validation_alias=AliasChoices("radius", "accuracy_radius"))
    timestamp: Gp51Timestamp = Field(
        default=None,
        validation_alias=AliasChoices("updatetime", "devicetime", "position_timestamp", "timestamp"),
    )
    moving: bool = Field(default=False, validation_alias=AliasChoices("moving", "is_moving"))
    status_code: int | None = Field(default=None, validation_alias=AliasChoices("status", "status_code"))
    status_text: str | None = Field(
        default=None,
        validation_alias=AliasChoices("strstatusen", "strstatus", "status_description"),
    )
    alarm: int | None = Field(default=None, validation_alias=AliasChoices("alarm", "alarm_code"))
    total_distance: float | None = Field(
        default=None,
        validation_alias=AliasChoices("totaldistance", "total_distance"),
    )
    park_duration: int | None = Field(
        default=None,
        validation_alias=AliasChoices("parkduration", "parking_duration"),
    )

    @field_validator("device_id", mode="before")
    @classmethod
    def _coerce_device_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("deviceid must be non-empty")
        return text

    @field_validator("latitude", "longitude", "speed", "course", "altitude", "radius", "total_distance", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("status_code", "alarm", "park_duration", mode="before")
    @classmethod
    def _coerce_ints(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("moving", mode="before")
    @classmethod
    def _coerce_moving(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        return safe_int(value) == 1

    @field_validator("status_text", mode="before")
    @classmethod
    def _coerce_status_text(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def has_fix(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_row(self) -> dict[str, Any]:
        """Row for the ``live_positions`` table (one row per device)."""
        return {
            "device_id": self.device_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed or 0,
            "course": self.course or 0,
            "altitude": self.altitude or 0,
            "accuracy_radius": self.radius or 0,
            "position_timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status_code": self.status_code,
            "status_description": self.status_text,
            "alarm_code": self.alarm,
            "is_moving": self.moving,
            "parking_duration": self.park_duration,
            "total_distance": self.total_distance,
            "position_data": self.raw,
        }


class PositionBatch(Gp51BaseModel):
    """Result of one ``lastposition`` call."""

    records: list[Position] = Field(default_factory=list)
    last_query_position_time: int | None = Field(
        default=None,
        validation_alias=AliasChoices("lastquerypositiontime", "last_query_position_time"),
    )

    @field_validator("records", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, Position))]

    @field_validator("last_query_position_time", mode="before")
    @classmethod
    def _coerce_cursor(cls, value: Any) -> int | None:
        return safe_int(value)
