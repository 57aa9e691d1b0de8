"""Data models for GP51 API responses."""

from pygp51.models._base import Gp51BaseModel, Gp51Timestamp
from pygp51.models.device import Device, DeviceGroup, DeviceStatus, flatten_groups
from pygp51.models.history import TrackPoint, Trip
from pygp51.models.position import Position, PositionBatch
from pygp51.models.token import AuthToken

__all__ = [
    "AuthToken",
    "Device",
    "DeviceGroup",
    "DeviceStatus",
    "Gp51BaseModel",
    "Gp51Timestamp",
    "Position",
    "PositionBatch",
    "TrackPoint",
    "Trip",
    "flatten_groups",
]
