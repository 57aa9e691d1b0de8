"""Device and device-group models (``querymonitorlist``)."""

from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pygp51._constants import ONLINE_WINDOW_SECONDS, device_status_text
from pygp51._normalize import safe_int, safe_str
from pygp51.models._base import Gp51BaseModel, Gp51Timestamp


class DeviceStatus(enum.StrEnum):
    """Connectivity derived from the device's last-active timestamp."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class Device(Gp51BaseModel):
    """A GP51-tracked unit, flattened out of its monitor-list group."""

    device_id: str = Field(validation_alias=AliasChoices("deviceid", "device_id"))
    """Vendor-assigned device identifier (IMEI-like string)."""
    device_name: str = Field(default="", validation_alias=AliasChoices("devicename", "device_name"))
    device_type: int | None = Field(default=None, validation_alias=AliasChoices("devicetype", "device_type"))
    sim_number: str | None = Field(default=None, validation_alias=AliasChoices("simnum", "sim_number"))
    group_id: int | None = Field(default=None, validation_alias=AliasChoices("groupid", "group_id"))
    group_name: str | None = Field(default=None, validation_alias=AliasChoices("groupname", "group_name"))
    last_active_time: Gp51Timestamp = Field(
        default=None,
        validation_alias=AliasChoices("lastactivetime", "last_active_time"),
    )
    overdue_time: Gp51Timestamp = Field(default=None, validation_alias=AliasChoices("overduetime", "overdue_time"))
    status_code: int | None = Field(default=None, validation_alias=AliasChoices("status", "status_code"))
    is_free: int | None = Field(default=None, validation_alias=AliasChoices("isfree", "is_free"))
    allow_edit: int = Field(default=1, validation_alias=AliasChoices("allowedit", "allow_edit"))
    # GP51 spells it "stared".
    starred: int = Field(default=0, validation_alias=AliasChoices("stared", "starred"))
    remark: str | None = Field(default=None, validation_alias=AliasChoices("remark"))
    creator: str | None = Field(default=None, validation_alias=AliasChoices("creater", "creator"))
    login_name: str | None = Field(default=None, validation_alias=AliasChoices("loginame", "login_name"))

    @field_validator("device_id", mode="before")
    @classmethod
    def _coerce_device_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("deviceid must be non-empty")
        return text

    @field_validator("device_type", "group_id", "status_code", "is_free", mode="before")
    @classmethod
    def _coerce_ints(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("allow_edit", "starred", mode="before")
    @classmethod
    def _coerce_flags(cls, value: Any) -> int:
        if isinstance(value, bool):
            return 1 if value else 0
        parsed = safe_int(value)
        return parsed if parsed is not None else 0

    @field_validator("sim_number", "group_name", "remark", "creator", "login_name", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def status_text(self) -> str:
        return device_status_text(self.status_code)

    def status(self, now: datetime | None = None) -> DeviceStatus:
        """Online when the device reported within the last ten minutes."""
        if self.last_active_time is None:
            return DeviceStatus.UNKNOWN
        current = now or datetime.now(UTC)
        if current - self.last_active_time <= timedelta(seconds=ONLINE_WINDOW_SECONDS):
            return DeviceStatus.ONLINE
        return DeviceStatus.OFFLINE

    def to_row(self) -> dict[str, Any]:
        """Row for the ``gp51_devices`` table."""
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "device_type": self.device_type,
            "sim_number": self.sim_number,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "last_active_time": self.last_active_time.isoformat() if self.last_active_time else None,
            "status_code": self.status_code,
            "is_free": self.is_free,
            "allow_edit": self.allow_edit,
            "starred": self.starred,
            "remark": self.remark,
            "creator": self.creator,
            "raw_data": self.raw,
        }


class DeviceGroup(Gp51BaseModel):
    """A monitor-list group as returned by ``querymonitorlist``."""

    group_id: int | None = Field(default=None, validation_alias=AliasChoices("groupid", "group_id"))
    group_name: str = Field(default="", validation_alias=AliasChoices("groupname", "group_name"))
    remark: str | None = Field(default=None, validation_alias=AliasChoices("remark"))
    devices: list[Device] = Field(default_factory=list)

    @field_validator("group_id", mode="before")
    @classmethod
    def _coerce_group_id(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("devices", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, Device))]

    def flattened(self) -> list[Device]:
        """Devices of this group with the group id/name copied onto each."""
        return [
            device.model_copy(update={"group_id": self.group_id, "group_name": self.group_name or None})
            for device in self.devices
        ]


def flatten_groups(groups: list[DeviceGroup]) -> list[Device]:
    """Flatten grouped devices; a device listed in several groups keeps the first."""
    seen: set[str] = set()
    devices: list[Device] = []
    for group in groups:
        for device in group.flattened():
            if device.device_id in seen:
                continue
            seen.add(device.device_id)
            devices.append(device)
    return devices
