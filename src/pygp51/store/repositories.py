"""Table-level repositories for the GP51 tables."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pygp51._constants import (
    DEVICES_TABLE,
    LIVE_POSITIONS_TABLE,
    SESSIONS_TABLE,
    UPSERT_SESSION_RPC,
    USERS_TABLE,
)
from pygp51.exceptions import Gp51PersistenceError
from pygp51.models.device import Device
from pygp51.models.position import Position
from pygp51.store.base import Eq, In, Row, Store

_logger = logging.getLogger(__name__)


async def resolve_app_user_id(store: Store, email: str) -> str | None:
    """Look up the ``envio_users.id`` for an application user's e-mail."""
    rows = await store.select(USERS_TABLE, filters=[Eq("email", email)], columns="id", limit=1)
    if not rows:
        return None
    value = rows[0].get("id")
    return str(value) if value is not None else None


class SessionRepository:
    """``gp51_sessions`` rows of one application user."""

    def __init__(self, store: Store, app_user_id: str) -> None:
        self._store = store
        self._user_id = app_user_id

    @property
    def app_user_id(self) -> str:
        return self._user_id

    async def load_latest_active(self) -> Row | None:
        rows = await self._store.select(
            SESSIONS_TABLE,
            filters=[Eq("envio_user_id", self._user_id), Eq("is_active", True)],
            order="created_at",
            desc=True,
            limit=1,
        )
        return rows[0] if rows else None

    async def save(self, row: dict[str, Any]) -> None:
        """Persist a session row, preferring the ``upsert_gp51_session`` RPC.

        Projects without the RPC get a plain upsert keyed on the user.
        """
        payload = {"envio_user_id": self._user_id, **row}
        try:
            await self._store.rpc(UPSERT_SESSION_RPC, {f"p_{k}": v for k, v in payload.items()})
            return
        except Gp51PersistenceError as exc:
            if exc.status_code != 404:
                raise
            _logger.debug("%s unavailable, falling back to table upsert", UPSERT_SESSION_RPC)
        await self._store.upsert(SESSIONS_TABLE, [payload], on_conflict="envio_user_id")

    async def delete_all(self) -> int:
        removed = await self._store.delete(SESSIONS_TABLE, filters=[Eq("envio_user_id", self._user_id)])
        return len(removed)


class DeviceRepository:
    """Local cache of vendor devices in ``gp51_devices``.

    Rows belong to the GP51 account that reported them (``gp51_username``);
    every read and delete is scoped to one account so a sync never touches
    another account's devices.
    """

    OWNER_COLUMN = "gp51_username"

    def __init__(self, store: Store) -> None:
        self._store = store

    async def upsert_many(self, owner: str, devices: Sequence[Device]) -> int:
        if not devices:
            return 0
        rows = await self._store.upsert(
            DEVICES_TABLE,
            [{**d.to_row(), self.OWNER_COLUMN: owner} for d in devices],
            on_conflict=f"{self.OWNER_COLUMN},device_id",
        )
        return len(rows)

    async def list_ids(self, owner: str) -> set[str]:
        rows = await self._store.select(DEVICES_TABLE, filters=[Eq(self.OWNER_COLUMN, owner)], columns="device_id")
        return {str(r["device_id"]) for r in rows if r.get("device_id") is not None}

    async def delete_ids(self, owner: str, device_ids: Sequence[str]) -> int:
        if not device_ids:
            return 0
        removed = await self._store.delete(
            DEVICES_TABLE,
            filters=[Eq(self.OWNER_COLUMN, owner), In("device_id", list(device_ids))],
        )
        return len(removed)


class LivePositionRepository:
    """``live_positions``: one latest row per device."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def latest_for(self, device_ids: Sequence[str]) -> list[Position]:
        """Latest row per requested device, newest first within the query."""
        if not device_ids:
            return []
        rows = await self._store.select(
            LIVE_POSITIONS_TABLE,
            filters=[In("device_id", list(device_ids))],
            order="position_timestamp",
            desc=True,
        )
        latest: dict[str, Position] = {}
        for row in rows:
            device_id = row.get("device_id")
            if device_id is None or str(device_id) in latest:
                continue
            try:
                latest[str(device_id)] = Position.model_validate(row)
            except ValueError:
                _logger.warning("Skipping malformed live_positions row device_id=%s", device_id, exc_info=True)
        return list(latest.values())

    async def upsert_many(self, positions: Sequence[Position]) -> int:
        if not positions:
            return 0
        rows = await self._store.upsert(
            LIVE_POSITIONS_TABLE,
            [p.to_row() for p in positions],
            on_conflict="device_id",
        )
        return len(rows)
