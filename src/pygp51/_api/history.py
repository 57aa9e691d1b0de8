"""Historical data actions: ``querytracks`` and ``querytrips``."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pygp51._api._common import post_action_json
from pygp51._transport import Transport
from pygp51.models.history import TrackPoint, Trip

#: GP51 interprets begin/end times in this UTC offset unless told otherwise.
DEFAULT_TIMEZONE = 8

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _format_time(value: datetime | str) -> str:
    if isinstance(value, datetime):
        return value.strftime(_TIME_FORMAT)
    return value


def build_history_params(
    device_id: str,
    begin: datetime | str,
    end: datetime | str,
    timezone: int = DEFAULT_TIMEZONE,
) -> dict[str, Any]:
    return {
        "deviceid": device_id,
        "begintime": _format_time(begin),
        "endtime": _format_time(end),
        "timezone": timezone,
    }


async def fetch_tracks(
    transport: Transport,
    token: str,
    device_id: str,
    begin: datetime | str,
    end: datetime | str,
    *,
    timezone: int = DEFAULT_TIMEZONE,
) -> list[TrackPoint]:
    response = await post_action_json(
        transport,
        "querytracks",
        build_history_params(device_id, begin, end, timezone),
        token=token,
    )
    records = response.get("records")
    items = records if isinstance(records, list) else []
    return [TrackPoint.model_validate(item) for item in items if isinstance(item, dict)]


async def fetch_trips(
    transport: Transport,
    token: str,
    device_id: str,
    begin: datetime | str,
    end: datetime | str,
    *,
    timezone: int = DEFAULT_TIMEZONE,
) -> list[Trip]:
    response = await post_action_json(
        transport,
        "querytrips",
        build_history_params(device_id, begin, end, timezone),
        token=token,
    )
    # Trips come back under "totaltrips" on some accounts and "trips" on others.
    records = response.get("totaltrips") or response.get("trips") or response.get("records")
    items = records if isinstance(records, list) else []
    return [Trip.model_validate(item) for item in items if isinstance(item, dict)]
