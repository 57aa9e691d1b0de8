"""High-level async client for GP51 with Supabase persistence."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, TypeVar

import aiohttp

from pygp51._transport import HttpTransport, TraceCallback
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51Error, Gp51SessionExpiredError
from pygp51.models.device import Device
from pygp51.models.history import TrackPoint, Trip
from pygp51.models.position import Position
from pygp51.realtime import ChangeFeed, LivePositionSubscriber, SupabaseRealtimeFeed
from pygp51.saga import SagaResult, SagaRunner, import_user_with_vehicles
from pygp51.session import Session, SessionManager
from pygp51.store.base import Store
from pygp51.store.memory import MemoryStore
from pygp51.store.postgrest import PostgrestStore
from pygp51.store.repositories import (
    DeviceRepository,
    LivePositionRepository,
    SessionRepository,
    resolve_app_user_id,
)
from pygp51.sync import DeviceSync, SyncReport

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class Gp51Client:
    """Async client for GP51 plus the Supabase tables that cache it.

    The client is the composition root: it owns the HTTP session, the
    transport, the store and one :class:`SessionManager` for the
    configured application user, and wires them into device sync and the
    live position subscriber.

    Usage::

        async with Gp51Client(Gp51Config.from_env()) as client:
            await client.ensure_session()
            report = await client.sync_devices()
    """

    def __init__(
        self,
        config: Gp51Config,
        *,
        http_session: aiohttp.ClientSession | None = None,
        store: Store | None = None,
        feed: ChangeFeed | None = None,
        on_api_trace: TraceCallback | None = None,
    ) -> None:
        self._config = config
        self._external_session = http_session is not None
        self._http_session = http_session
        self._store = store
        self._feed = feed
        self._on_api_trace = on_api_trace
        self._transport: HttpTransport | None = None
        self._sessions: SessionManager | None = None
        self._sync: DeviceSync | None = None
        self._subscriber: LivePositionSubscriber | None = None
        self._sagas = SagaRunner()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Gp51Client:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        try:
            await self._setup(self._http_session)
        except BaseException:
            await self.__aexit__(None, None, None)
            raise
        return self

    async def _setup(self, http_session: aiohttp.ClientSession) -> None:
        self._transport = HttpTransport(self._config, http_session, on_trace=self._on_api_trace)

        if self._store is None:
            if self._config.supabase_url and self._config.supabase_key:
                self._store = PostgrestStore(self._config, http_session)
            else:
                _logger.info("Supabase not configured; using an in-memory store")
                self._store = MemoryStore()

        repository = await self._session_repository(self._store)
        self._sessions = SessionManager(self._config, self._transport, repository)
        await self._sessions.initialize()

        self._sync = DeviceSync(
            self._sessions,
            self._transport,
            devices=DeviceRepository(self._store),
            live_positions=LivePositionRepository(self._store),
        )

    async def __aexit__(self, *exc: Any) -> None:
        if self._subscriber is not None:
            await self._subscriber.unsubscribe()
            self._subscriber = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None
        self._sync = None
        self._sessions = None

    async def _session_repository(self, store: Store) -> SessionRepository | None:
        email = self._config.app_user_email
        if not email:
            _logger.debug("No app_user_email configured; GP51 session is kept in memory only")
            return None
        app_user_id = await resolve_app_user_id(store, email)
        if app_user_id is None:
            _logger.warning("No envio_users row for %s; GP51 session is kept in memory only", email)
            return None
        return SessionRepository(store, app_user_id)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> SessionManager:
        if self._sessions is None:
            raise Gp51Error("Client not initialized. Use 'async with Gp51Client(...) as client:'")
        return self._sessions

    @property
    def sync(self) -> DeviceSync:
        if self._sync is None:
            raise Gp51Error("Client not initialized. Use 'async with Gp51Client(...) as client:'")
        return self._sync

    @property
    def store(self) -> Store:
        if self._store is None:
            raise Gp51Error("Client not initialized. Use 'async with Gp51Client(...) as client:'")
        return self._store

    @property
    def sagas(self) -> SagaRunner:
        return self._sagas

    @property
    def subscriber(self) -> LivePositionSubscriber | None:
        return self._subscriber

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, username: str | None = None, password: str | None = None) -> Session:
        """Authenticate against GP51 and persist the new session."""
        return await self.sessions.login(username, password)

    async def ensure_session(self) -> Session:
        """Return a locally valid session, logging in when there is none."""
        sessions = self.sessions
        session = sessions.get_session()
        if session is not None and sessions.is_session_valid():
            return session
        return await self.login()

    async def logout(self) -> None:
        await self.sessions.logout()

    async def _call_with_reauth(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a vendor call, logging in again once if the session lapsed."""
        await self.ensure_session()
        try:
            return await fn()
        except Gp51SessionExpiredError:
            await self.sessions.clear_session()
            await self.login()
            return await fn()

    # ------------------------------------------------------------------
    # Devices and positions
    # ------------------------------------------------------------------

    async def get_devices(self) -> list[Device]:
        return await self._call_with_reauth(self.sync.get_device_list)

    async def sync_devices(self, *, prune: bool = True) -> SyncReport:
        """Upsert the vendor device list into ``gp51_devices`` and prune the rest."""
        return await self._call_with_reauth(lambda: self.sync.sync_with_gp51(prune=prune))

    async def get_last_positions(self, device_ids: Sequence[str] | None = None) -> list[Position]:
        return await self._call_with_reauth(lambda: self.sync.get_last_positions(device_ids))

    async def get_tracks(self, device_id: str, begin: datetime | str, end: datetime | str) -> list[TrackPoint]:
        return await self._call_with_reauth(lambda: self.sync.get_tracks(device_id, begin, end))

    async def get_trips(self, device_id: str, begin: datetime | str, end: datetime | str) -> list[Trip]:
        return await self._call_with_reauth(lambda: self.sync.get_trips(device_id, begin, end))

    async def subscribe_positions(self, device_ids: Sequence[str]) -> LivePositionSubscriber:
        """Watch ``live_positions`` for *device_ids*, replacing any earlier watch."""
        if self._subscriber is None:
            if self._feed is None:
                if self._http_session is None:
                    raise Gp51Error("Client not initialized. Use 'async with Gp51Client(...) as client:'")
                self._feed = SupabaseRealtimeFeed(self._config, self._http_session)
            self._subscriber = LivePositionSubscriber(self._feed, LivePositionRepository(self.store))
        await self._subscriber.subscribe(device_ids)
        return self._subscriber

    async def unsubscribe_positions(self) -> None:
        if self._subscriber is not None:
            await self._subscriber.unsubscribe()

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    async def import_user(
        self,
        username: str,
        user_data: Mapping[str, Any],
        devices: Sequence[Device],
    ) -> SagaResult:
        """Create an application user and its vehicles for a GP51 account."""
        return await import_user_with_vehicles(
            self.store,
            username,
            user_data,
            devices,
            runner=self._sagas,
            retry_attempts=self._config.retry_attempts,
            retry_delay=self._config.retry_delay,
        )
