"""Device list action: ``querymonitorlist``.

The response groups devices under ``groups[].devices``; callers mostly
want the flat list, so :func:`fetch_device_list` flattens it.

Devices are validated one by one, so a malformed entry only drops itself.
:class:`DeviceListing` counts what was dropped; a listing with skipped
entries is not a complete picture of the account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pygp51._api._common import post_action_json
from pygp51._transport import Transport
from pygp51.models.device import Device, DeviceGroup, flatten_groups

_logger = logging.getLogger(__name__)

ACTION = "querymonitorlist"


@dataclass(frozen=True)
class DeviceListing:
    """Flattened devices plus the number of vendor entries that failed to parse."""

    devices: list[Device]
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.skipped == 0


def _parse_devices(group_id: Any, raw_devices: Any) -> tuple[list[Device], int]:
    if raw_devices is None:
        return [], 0
    if not isinstance(raw_devices, list):
        _logger.warning("Monitor-list group groupid=%s has non-list devices", group_id)
        return [], 1
    devices: list[Device] = []
    skipped = 0
    for entry in raw_devices:
        if not isinstance(entry, dict):
            skipped += 1
            continue
        try:
            devices.append(Device.model_validate(entry))
        except ValueError:
            skipped += 1
            _logger.warning(
                "Skipping malformed device groupid=%s deviceid=%s",
                group_id,
                entry.get("deviceid"),
                exc_info=True,
            )
    return devices, skipped


def parse_monitor_list(response: dict[str, Any]) -> tuple[list[DeviceGroup], int]:
    """Parse ``groups`` into typed groups and count the entries skipped."""
    raw_groups = response.get("groups")
    if raw_groups is None:
        return [], 0
    if not isinstance(raw_groups, list):
        _logger.warning("querymonitorlist returned non-list groups")
        return [], 1
    groups: list[DeviceGroup] = []
    skipped = 0
    for item in raw_groups:
        if not isinstance(item, dict):
            skipped += 1
            continue
        devices, bad = _parse_devices(item.get("groupid"), item.get("devices"))
        skipped += bad
        try:
            groups.append(DeviceGroup.model_validate({**item, "devices": devices, "raw": item}))
        except ValueError:
            skipped += 1
            _logger.warning("Skipping malformed monitor-list group groupid=%s", item.get("groupid"), exc_info=True)
    return groups, skipped


async def fetch_monitor_list(transport: Transport, token: str, username: str) -> dict[str, Any]:
    """Raw ``querymonitorlist`` response (also used as the session liveness probe)."""
    return await post_action_json(transport, ACTION, {"username": username}, token=token)


async def fetch_device_listing(transport: Transport, token: str, username: str) -> DeviceListing:
    """Fetch all devices visible to *username* and report parse failures."""
    response = await fetch_monitor_list(transport, token, username)
    groups, skipped = parse_monitor_list(response)
    listing = DeviceListing(devices=flatten_groups(groups), skipped=skipped)
    _logger.debug("querymonitorlist returned %d devices (%d skipped)", len(listing.devices), skipped)
    return listing


async def fetch_device_list(transport: Transport, token: str, username: str) -> list[Device]:
    """Fetch all devices visible to *username*, flattened across groups."""
    listing = await fetch_device_listing(transport, token, username)
    return listing.devices
