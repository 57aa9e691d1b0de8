"""Track and trip models (``querytracks`` / ``querytrips``)."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pygp51._normalize import safe_float, safe_int
from pygp51.models._base import Gp51BaseModel, Gp51Timestamp


class TrackPoint(Gp51BaseModel):
    """A single point of a device's historical track."""

    track_id: int | None = Field(default=None, validation_alias=AliasChoices("trackid", "track_id"))
    latitude: float | None = Field(default=None, validation_alias=AliasChoices("callat", "lat"))
    longitude: float | None = Field(default=None, validation_alias=AliasChoices("callon", "lon"))
    speed: float | None = None
    course: float | None = None
    altitude: float | None = None
    total_distance: float | None = Field(default=None, validation_alias=AliasChoices("totaldistance"))
    status_text: str | None = Field(default=None, validation_alias=AliasChoices("strstatusen", "strstatus"))
    start_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("starttime"))
    end_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("endtime"))
    update_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("updatetime", "arrivedtime"))

    @field_validator("latitude", "longitude", "speed", "course", "altitude", "total_distance", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("track_id", mode="before")
    @classmethod
    def _coerce_ints(cls, value: Any) -> int | None:
        return safe_int(value)


class Trip(Gp51BaseModel):
    """A trip segment reported by ``querytrips``."""

    start_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("starttime"))
    end_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("endtime"))
    start_latitude: float | None = Field(default=None, validation_alias=AliasChoices("startlat"))
    start_longitude: float | None = Field(default=None, validation_alias=AliasChoices("startlon"))
    end_latitude: float | None = Field(default=None, validation_alias=AliasChoices("endlat"))
    end_longitude: float | None = Field(default=None, validation_alias=AliasChoices("endlon"))
    distance: float | None = Field(default=None, validation_alias=AliasChoices("tripdistance", "distance"))
    max_speed: float | None = Field(default=None, validation_alias=AliasChoices("maxspeed"))
    average_speed: float | None = Field(default=None, validation_alias=AliasChoices("averagespeed", "avgspeed"))

    @field_validator(
        "start_latitude",
        "start_longitude",
        "end_latitude",
        "end_longitude",
        "distance",
        "max_speed",
        "average_speed",
        mode="before",
    )
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)
