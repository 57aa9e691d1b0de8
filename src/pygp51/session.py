"""GP51 session state and its lifecycle manager.

The vendor token is cached locally together with a wall-clock expiry so
that every request does not need a fresh login. :class:`SessionManager`
owns that state for one application user: it restores it from
``gp51_sessions`` on start, checks it before every vendor call, probes it
against ``querymonitorlist`` on demand, and clears it locally and remotely
whenever it turns out to be unusable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pygp51._api import devices as _devices_api
from pygp51._api import login as _login_api
from pygp51._normalize import parse_timestamp
from pygp51._redact import mask_token
from pygp51._transport import Transport
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51Error, Gp51PersistenceError, Gp51SessionExpiredError
from pygp51.store.repositories import SessionRepository

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Session(BaseModel):
    """Cached GP51 token plus bookkeeping.

    Parameters
    ----------
    username : str
        GP51 account the token belongs to.
    token : str
        Vendor bearer token.
    expires_at : datetime
        Wall-clock instant after which the token must not be used.
    is_valid : bool
        Cleared when the token was rejected; an invalid session is never
        sent to the vendor.
    last_activity : datetime
        Last successful vendor call made with this token.
    created_at : datetime
        When the token was obtained.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    username: str
    token: str
    expires_at: datetime
    is_valid: bool = True
    last_activity: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.is_valid and bool(self.token) and not self.is_expired(now)

    def to_row(self) -> dict[str, Any]:
        """Columns of ``gp51_sessions`` (without the owning user id)."""
        return {
            "username": self.username,
            "gp51_token": self.token,
            "token_expires_at": self.expires_at.isoformat(),
            "is_active": self.is_valid,
            "last_activity_at": self.last_activity.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Session | None:
        """Rebuild a session from a ``gp51_sessions`` row, or ``None`` if incomplete."""
        token = row.get("gp51_token")
        username = row.get("username")
        expires_at = parse_timestamp(row.get("token_expires_at"))
        if not token or not username or expires_at is None:
            return None
        created_at = parse_timestamp(row.get("created_at")) or _utcnow()
        last_activity = parse_timestamp(row.get("last_activity_at")) or created_at
        return cls(
            username=str(username),
            token=str(token),
            expires_at=expires_at,
            is_valid=bool(row.get("is_active", True)),
            last_activity=last_activity,
            created_at=created_at,
        )


SessionListener = Callable[[Session | None], None]


class SessionManager:
    """Owns the GP51 session of one application user.

    Construct one per application user at the composition root (see
    :class:`pygp51.client.Gp51Client`). Failures of the vendor probe and of
    persistence are logged and reported as ``False`` from
    :meth:`validate_session` / :meth:`initialize`; every other method raises
    typed :class:`~pygp51.exceptions.Gp51Error` subclasses.
    """

    def __init__(
        self,
        config: Gp51Config,
        transport: Transport,
        repository: SessionRepository | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._transport = transport
        self._repository = repository
        self._clock = clock
        self._ttl = timedelta(seconds=config.session_ttl)
        self._session: Session | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """Restore the newest active, unexpired stored session.

        Idempotent: once a lookup completed, later calls return whether a
        session is loaded without touching storage again.
        """
        async with self._init_lock:
            if self._initialized:
                return self._session is not None
            if self._repository is None:
                self._initialized = True
                return False
            try:
                row = await self._repository.load_latest_active()
            except Gp51PersistenceError:
                _logger.warning("Failed to load stored GP51 session", exc_info=True)
                return False

            self._initialized = True
            restored = Session.from_row(row) if row is not None else None
            if restored is None or not restored.is_usable(self._clock()):
                _logger.info("No valid stored GP51 session")
                return False

            self._session = restored
            _logger.info("Restored GP51 session for %s (token %s)", restored.username, mask_token(restored.token))
            self._notify()
            return True

    async def validate_session(self) -> bool:
        """Check the session locally, then against the vendor.

        Returns ``False`` without any network call when there is no session
        or it is invalid/expired. Otherwise probes ``querymonitorlist`` and
        requires ``status == 0``. Every ``False`` path clears the session.
        """
        session = self._session
        if session is None:
            _logger.debug("No GP51 session to validate")
            await self.clear_session()
            return False

        if not session.is_usable(self._clock()):
            _logger.info("GP51 session for %s expired at %s", session.username, session.expires_at.isoformat())
            await self.clear_session()
            return False

        try:
            await _devices_api.fetch_monitor_list(self._transport, session.token, session.username)
        except Gp51Error:
            _logger.warning("GP51 session probe failed for %s", session.username, exc_info=True)
            await self.clear_session()
            return False

        self.touch()
        _logger.debug("GP51 session validated for %s", session.username)
        return True

    async def refresh_session(self) -> bool:
        """Push ``expires_at`` out by the session TTL and re-persist.

        This does not re-authenticate with GP51; it trusts that the vendor
        token stays valid for the extended period. An expired or invalid
        session is not extended.
        """
        session = self._session
        now = self._clock()
        if session is None or not session.is_usable(now):
            return False
        self._session = session.model_copy(update={"expires_at": now + self._ttl, "last_activity": now})
        await self._persist()
        _logger.debug("GP51 session extended until %s", self._session.expires_at.isoformat())
        return True

    async def set_session_from_auth(self, username: str, token: str) -> Session:
        """Replace the in-memory session with a freshly issued token."""
        now = self._clock()
        self._session = Session(
            username=username,
            token=token,
            expires_at=now + self._ttl,
            is_valid=True,
            last_activity=now,
            created_at=now,
        )
        self._initialized = True
        await self._persist()
        _logger.info("GP51 session set for %s (token %s)", username, mask_token(token))
        self._notify()
        return self._session

    async def invalidate(self, reason: str = "") -> None:
        """Mark the session as rejected so its token is never sent again.

        The row stays in ``gp51_sessions`` with ``is_active = false``; a new
        login replaces it.
        """
        session = self._session
        if session is None or not session.is_valid:
            return
        self._session = session.model_copy(update={"is_valid": False})
        _logger.warning("GP51 session for %s invalidated%s", session.username, f": {reason}" if reason else "")
        await self._persist()
        self._notify()

    async def clear_session(self) -> None:
        """Delete persisted rows for this user and forget the session."""
        had_session = self._session is not None
        self._session = None
        if self._repository is not None:
            try:
                removed = await self._repository.delete_all()
                _logger.debug("Removed %d stored GP51 session row(s)", removed)
            except Gp51PersistenceError:
                _logger.warning("Failed to delete stored GP51 session", exc_info=True)
        if had_session:
            _logger.info("GP51 session cleared")
            self._notify()

    # ------------------------------------------------------------------
    # Vendor login/logout
    # ------------------------------------------------------------------

    async def login(self, username: str | None = None, password: str | None = None) -> Session:
        """Log in to GP51 and adopt the returned token."""
        token = await _login_api.login(self._config, self._transport, username, password)
        return await self.set_session_from_auth(token.username, token.token)

    async def logout(self) -> None:
        """Log out on the vendor side (best effort) and clear local state."""
        session = self._session
        if session is not None and session.is_usable(self._clock()):
            try:
                await _login_api.logout(self._transport, session.token)
            except Gp51Error:
                _logger.warning("GP51 logout failed", exc_info=True)
        await self.clear_session()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_session(self) -> Session | None:
        return self._session

    def is_session_valid(self) -> bool:
        """Local check only: present, not invalidated, not past expiry."""
        session = self._session
        return session is not None and session.is_usable(self._clock())

    def require_token(self) -> str:
        """Token for a vendor call, or raise before anything is sent."""
        session = self._session
        if session is None:
            raise Gp51SessionExpiredError("No GP51 session; log in first")
        if not session.is_usable(self._clock()):
            raise Gp51SessionExpiredError(
                f"GP51 session for {session.username} is no longer valid (expires_at={session.expires_at.isoformat()})"
            )
        return session.token

    def touch(self) -> None:
        """Record a successful vendor call (memory only)."""
        session = self._session
        if session is not None:
            self._session = session.model_copy(update={"last_activity": self._clock()})

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Call *listener* with the new session (or ``None``) on every change."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        session = self._session
        if session is None or self._repository is None:
            return
        try:
            await self._repository.save(session.to_row())
        except Gp51PersistenceError:
            _logger.warning("Failed to persist GP51 session", exc_info=True)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._session)
            except Exception:
                _logger.debug("Session listener failed", exc_info=True)
