"""Last-position action: ``lastposition``."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pygp51._api._common import post_action_json
from pygp51._transport import Transport
from pygp51.models.position import PositionBatch

_logger = logging.getLogger(__name__)

ACTION = "lastposition"


def build_position_params(
    device_ids: Sequence[str] | None,
    last_query_position_time: int | None,
) -> dict[str, Any]:
    """Build the ``lastposition`` body.

    ``deviceids`` is omitted when no filter is given (all devices).
    """
    params: dict[str, Any] = {"lastquerypositiontime": last_query_position_time or 0}
    if device_ids:
        params["deviceids"] = [str(d) for d in device_ids]
    return params


async def fetch_last_positions(
    transport: Transport,
    token: str,
    device_ids: Sequence[str] | None = None,
    last_query_position_time: int | None = None,
) -> PositionBatch:
    """Fetch the latest positions, optionally filtered and incremental."""
    params = build_position_params(device_ids, last_query_position_time)
    response = await post_action_json(transport, ACTION, params, token=token)
    batch = PositionBatch.model_validate(response)
    _logger.debug(
        "lastposition returned %d records cursor=%s",
        len(batch.records),
        batch.last_query_position_time,
    )
    return batch
