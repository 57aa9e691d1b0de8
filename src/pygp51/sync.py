"""Device and position synchronisation with GP51."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from pygp51._api import devices as _devices_api
from pygp51._api import history as _history_api
from pygp51._api import positions as _positions_api
from pygp51._transport import Transport
from pygp51.exceptions import Gp51ConfigError, Gp51SessionExpiredError
from pygp51.models.device import Device
from pygp51.models.history import TrackPoint, Trip
from pygp51.models.position import Position
from pygp51.session import SessionManager
from pygp51.state.events import PositionSource
from pygp51.state.store import PositionStore
from pygp51.store.repositories import DeviceRepository, LivePositionRepository

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SyncReport:
    """Outcome of one :meth:`DeviceSync.sync_with_gp51` run."""

    fetched: int
    upserted: int
    pruned: int
    started_at: datetime
    finished_at: datetime
    pruned_ids: tuple[str, ...] = ()
    skipped: int = 0
    """Vendor entries that failed to parse; pruning is skipped when non-zero."""

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class DeviceSync:
    """Pulls devices and positions from GP51 and caches them locally.

    Every vendor call first asks the :class:`SessionManager` for a token,
    so an expired or invalidated session raises
    :class:`~pygp51.exceptions.Gp51SessionExpiredError` instead of reaching
    the vendor.

    Parameters
    ----------
    sessions : SessionManager
        Source of the vendor token and username.
    transport : Transport
        GP51 transport.
    devices : DeviceRepository or None
        ``gp51_devices`` cache. Without it :meth:`sync_with_gp51` only
        fetches.
    live_positions : LivePositionRepository or None
        ``live_positions`` table used by :meth:`store_positions`.
    position_store : PositionStore or None
        In-memory view updated with every polled position.
    """

    def __init__(
        self,
        sessions: SessionManager,
        transport: Transport,
        *,
        devices: DeviceRepository | None = None,
        live_positions: LivePositionRepository | None = None,
        position_store: PositionStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessions = sessions
        self._transport = transport
        self._devices = devices
        self._live_positions = live_positions
        self._position_store = position_store
        self._clock = clock
        self._cursor: int | None = None
        self._sync_task: asyncio.Task[SyncReport] | None = None
        self._last_report: SyncReport | None = None

    @property
    def cursor(self) -> int | None:
        """``lastquerypositiontime`` sent with the next position poll."""
        return self._cursor

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    def reset_cursor(self) -> None:
        self._cursor = None

    def _credentials(self) -> tuple[str, str]:
        token = self._sessions.require_token()
        session = self._sessions.get_session()
        if session is None:
            raise Gp51SessionExpiredError("No GP51 session; log in first")
        return token, session.username

    async def _vendor(self, call: Awaitable[T]) -> T:
        """Await a vendor call; a rejected token invalidates the session."""
        try:
            result = await call
        except Gp51SessionExpiredError as exc:
            await self._sessions.invalidate(exc.cause or str(exc))
            raise
        self._sessions.touch()
        return result

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def get_device_list(self) -> list[Device]:
        """Fetch the flattened vendor device list."""
        listing = await self._fetch_listing()
        return listing.devices

    async def _fetch_listing(self) -> _devices_api.DeviceListing:
        token, username = self._credentials()
        return await self._vendor(_devices_api.fetch_device_listing(self._transport, token, username))

    async def sync_with_gp51(self, *, prune: bool = True) -> SyncReport:
        """Reconcile ``gp51_devices`` with the vendor device list.

        Devices are upserted keyed on the GP51 account and ``device_id``;
        with *prune* that account's rows whose id the vendor no longer
        reports are deleted. Pruning is skipped when any vendor entry failed
        to parse. A call made while another sync is running waits for and
        returns that run's report.
        """
        running = self._sync_task
        if running is not None and not running.done():
            _logger.debug("Device sync already running; joining it")
            return await asyncio.shield(running)

        task = asyncio.create_task(self._sync(prune=prune))
        self._sync_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._sync_task is task:
                self._sync_task = None

    async def _sync(self, *, prune: bool) -> SyncReport:
        started_at = self._clock()
        _, owner = self._credentials()
        listing = await self._fetch_listing()
        devices = listing.devices

        upserted = 0
        pruned_ids: list[str] = []
        if self._devices is not None:
            upserted = await self._devices.upsert_many(owner, devices)
            if prune and not listing.complete:
                _logger.warning("Skipping device prune: %d vendor entries failed to parse", listing.skipped)
            elif prune:
                vendor_ids = {d.device_id for d in devices}
                local_ids = await self._devices.list_ids(owner)
                pruned_ids = sorted(local_ids - vendor_ids)
                if pruned_ids:
                    await self._devices.delete_ids(owner, pruned_ids)
                    _logger.info("Pruned %d device(s) no longer reported by GP51", len(pruned_ids))
        else:
            _logger.debug("No device repository configured; sync only fetched devices")

        report = SyncReport(
            fetched=len(devices),
            upserted=upserted,
            pruned=len(pruned_ids),
            started_at=started_at,
            finished_at=self._clock(),
            pruned_ids=tuple(pruned_ids),
            skipped=listing.skipped,
        )
        self._last_report = report
        _logger.info(
            "GP51 device sync: fetched=%d upserted=%d pruned=%d skipped=%d",
            report.fetched,
            report.upserted,
            report.pruned,
            report.skipped,
        )
        return report

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_last_positions(self, device_ids: Sequence[str] | None = None) -> list[Position]:
        """Poll the latest positions, incrementally from the stored cursor.

        The cursor only advances when the vendor call succeeds.
        """
        token, _ = self._credentials()
        batch = await self._vendor(
            _positions_api.fetch_last_positions(
                self._transport,
                token,
                device_ids,
                self._cursor,
            )
        )
        if batch.last_query_position_time is not None:
            self._cursor = batch.last_query_position_time

        if self._position_store is not None:
            for position in batch.records:
                self._position_store.apply_position(position, PositionSource.POLL)
        return list(batch.records)

    async def store_positions(self, positions: Sequence[Position]) -> int:
        """Upsert positions into ``live_positions`` (one row per device)."""
        if self._live_positions is None:
            raise Gp51ConfigError("No live_positions repository configured")
        with_fix = [p for p in positions if p.has_fix]
        skipped = len(positions) - len(with_fix)
        if skipped:
            _logger.debug("Skipping %d position(s) without a fix", skipped)
        return await self._live_positions.upsert_many(with_fix)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_tracks(self, device_id: str, begin: datetime | str, end: datetime | str) -> list[TrackPoint]:
        token, _ = self._credentials()
        return await self._vendor(_history_api.fetch_tracks(self._transport, token, device_id, begin, end))

    async def get_trips(self, device_id: str, begin: datetime | str, end: datetime | str) -> list[Trip]:
        token, _ = self._credentials()
        return await self._vendor(_history_api.fetch_trips(self._transport, token, device_id, begin, end))
