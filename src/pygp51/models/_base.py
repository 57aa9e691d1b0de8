"""Base model for GP51 API responses.

Every GP51 response model inherits from :class:`Gp51BaseModel` which
provides:

* a ``model_validator(mode="before")`` that strips sentinel values
  (``""``, ``"--"``, NaN) so the field default is used, and
* a ``raw`` dict that captures the original payload.

GP51 keys are flat lowercase words (``deviceid``, ``callat``), so fields
declare their wire names with ``validation_alias`` instead of an alias
generator.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from pygp51._normalize import parse_timestamp

# Sentinel strings GP51 uses for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan"})

Gp51Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch ints (seconds or ms) and ISO strings to UTC datetimes."""


class Gp51BaseModel(BaseModel):
    """Base for GP51 API response models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original API response dict."""

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_gp51_values(cls, values: Any) -> Any:
        """Strip sentinel values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        cleaned = Gp51BaseModel._clean_dict(values)
        # Only auto-stash raw when not explicitly provided.
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
