from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pygp51._constants import SESSIONS_TABLE, UPSERT_SESSION_RPC
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51PersistenceError, Gp51SessionExpiredError, Gp51TransportError
from pygp51.session import Session, SessionManager
from pygp51.store.memory import MemoryStore
from pygp51.store.repositories import SessionRepository

USER_ID = "user-1"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class _ProbeTransport:
    """Answers ``querymonitorlist`` with a configurable status."""

    def __init__(self, status: int = 0, error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.calls: list[tuple[str, dict[str, Any], str | None]] = []

    async def post_action(
        self,
        action: str,
        params: Mapping[str, Any],
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append((action, dict(params), token))
        if self.error is not None:
            raise self.error
        if action == "login":
            return {"status": 0, "token": "tok-login"}
        if action == "logout":
            return {"status": 0}
        return {"status": self.status, "cause": "token expired" if self.status else "", "groups": []}


class _FailingStore(MemoryStore):
    async def delete(self, table: str, *, filters: Any) -> list[dict[str, Any]]:
        raise Gp51PersistenceError("db down", status_code=503, table=table)

    async def upsert(self, table: str, rows: Any, *, on_conflict: str) -> list[dict[str, Any]]:
        raise Gp51PersistenceError("db down", status_code=503, table=table)


def _manager(
    transport: _ProbeTransport,
    store: MemoryStore | None = None,
    clock: _Clock | None = None,
) -> SessionManager:
    config = Gp51Config(username="octopus", password="secret")
    repository = SessionRepository(store, USER_ID) if store is not None else None
    return SessionManager(config, transport, repository, clock=clock or _Clock())


@pytest.mark.asyncio
async def test_set_session_expires_after_ttl_without_network() -> None:
    clock = _Clock()
    transport = _ProbeTransport()
    manager = _manager(transport, MemoryStore(), clock)

    await manager.set_session_from_auth("octopus", "tok123")
    assert manager.is_session_valid()

    clock.advance(hours=24)

    assert not manager.is_session_valid()
    assert await manager.validate_session() is False
    assert transport.calls == []
    assert manager.get_session() is None


@pytest.mark.asyncio
async def test_validate_session_at_exact_expiry_is_false() -> None:
    clock = _Clock()
    transport = _ProbeTransport()
    manager = _manager(transport, clock=clock)
    await manager.set_session_from_auth("octopus", "tok123")

    clock.advance(hours=23)

    assert await manager.validate_session() is False
    assert transport.calls == []


@pytest.mark.asyncio
async def test_clear_session_resets_state_and_rows() -> None:
    store = MemoryStore()
    manager = _manager(_ProbeTransport(), store)
    await manager.set_session_from_auth("octopus", "tok123")
    assert store.rows(SESSIONS_TABLE)

    await manager.clear_session()

    assert manager.get_session() is None
    assert not manager.is_session_valid()
    assert store.rows(SESSIONS_TABLE) == []


@pytest.mark.asyncio
async def test_clear_session_survives_persistence_failure() -> None:
    manager = _manager(_ProbeTransport(), _FailingStore())
    await manager.set_session_from_auth("octopus", "tok123")

    await manager.clear_session()

    assert manager.get_session() is None


@pytest.mark.asyncio
async def test_validate_session_probes_vendor_with_token() -> None:
    transport = _ProbeTransport(status=0)
    manager = _manager(transport)
    await manager.set_session_from_auth("octopus", "tok123")

    assert await manager.validate_session() is True
    assert transport.calls == [("querymonitorlist", {"username": "octopus"}, "tok123")]
    assert manager.get_session() is not None


@pytest.mark.asyncio
async def test_rejected_probe_clears_local_and_persisted_session() -> None:
    store = MemoryStore()
    transport = _ProbeTransport(status=1)
    manager = _manager(transport, store)
    await manager.set_session_from_auth("octopus", "tok123")

    assert await manager.validate_session() is False
    assert manager.get_session() is None
    assert store.rows(SESSIONS_TABLE) == []


@pytest.mark.asyncio
async def test_transport_failure_during_probe_returns_false() -> None:
    transport = _ProbeTransport(error=Gp51TransportError("timeout", action="querymonitorlist"))
    manager = _manager(transport)
    await manager.set_session_from_auth("octopus", "tok123")

    assert await manager.validate_session() is False
    assert manager.get_session() is None


@pytest.mark.asyncio
async def test_validate_without_session_is_false() -> None:
    transport = _ProbeTransport()
    manager = _manager(transport)

    assert await manager.validate_session() is False
    assert transport.calls == []


@pytest.mark.asyncio
async def test_refresh_extends_expiry_without_reauthenticating() -> None:
    clock = _Clock()
    transport = _ProbeTransport()
    store = MemoryStore()
    manager = _manager(transport, store, clock)
    await manager.set_session_from_auth("octopus", "tok123")

    clock.advance(hours=20)
    assert await manager.refresh_session() is True

    session = manager.get_session()
    assert session is not None
    assert session.expires_at == clock.now + timedelta(hours=23)
    assert session.token == "tok123"
    assert transport.calls == []
    assert store.rows(SESSIONS_TABLE)[0]["token_expires_at"] == session.expires_at.isoformat()


@pytest.mark.asyncio
async def test_refresh_does_not_revive_expired_session() -> None:
    clock = _Clock()
    manager = _manager(_ProbeTransport(), clock=clock)
    await manager.set_session_from_auth("octopus", "tok123")
    clock.advance(hours=30)

    assert await manager.refresh_session() is False
    assert not manager.is_session_valid()


@pytest.mark.asyncio
async def test_require_token_raises_before_any_call() -> None:
    clock = _Clock()
    manager = _manager(_ProbeTransport(), clock=clock)

    with pytest.raises(Gp51SessionExpiredError):
        manager.require_token()

    await manager.set_session_from_auth("octopus", "tok123")
    assert manager.require_token() == "tok123"

    clock.advance(hours=23, seconds=1)
    with pytest.raises(Gp51SessionExpiredError):
        manager.require_token()


@pytest.mark.asyncio
async def test_initialize_restores_latest_active_session_once() -> None:
    clock = _Clock()
    store = MemoryStore()
    await store.insert(
        SESSIONS_TABLE,
        [
            {
                "envio_user_id": USER_ID,
                "username": "octopus",
                "gp51_token": "old",
                "token_expires_at": (clock.now + timedelta(hours=1)).isoformat(),
                "is_active": True,
                "created_at": "2026-01-01T08:00:00+00:00",
            },
            {
                "envio_user_id": USER_ID,
                "username": "octopus",
                "gp51_token": "new",
                "token_expires_at": (clock.now + timedelta(hours=5)).isoformat(),
                "is_active": True,
                "created_at": "2026-01-01T10:00:00+00:00",
            },
            {
                "envio_user_id": "someone-else",
                "username": "other",
                "gp51_token": "foreign",
                "token_expires_at": (clock.now + timedelta(hours=5)).isoformat(),
                "is_active": True,
                "created_at": "2026-01-01T11:00:00+00:00",
            },
        ],
    )
    manager = _manager(_ProbeTransport(), store, clock)

    assert await manager.initialize() is True
    session = manager.get_session()
    assert session is not None
    assert session.token == "new"

    selects = sum(1 for op, _ in store.calls if op == "select")
    assert await manager.initialize() is True
    assert sum(1 for op, _ in store.calls if op == "select") == selects


@pytest.mark.asyncio
async def test_initialize_ignores_expired_rows() -> None:
    clock = _Clock()
    store = MemoryStore()
    await store.insert(
        SESSIONS_TABLE,
        [
            {
                "envio_user_id": USER_ID,
                "username": "octopus",
                "gp51_token": "stale",
                "token_expires_at": (clock.now - timedelta(minutes=1)).isoformat(),
                "is_active": True,
            }
        ],
    )
    manager = _manager(_ProbeTransport(), store, clock)

    assert await manager.initialize() is False
    assert manager.get_session() is None
    assert manager.initialized


@pytest.mark.asyncio
async def test_persist_prefers_rpc_when_available() -> None:
    store = MemoryStore()
    received: list[dict[str, Any]] = []

    async def upsert_session(params: Mapping[str, Any]) -> None:
        received.append(dict(params))

    store.register_rpc(UPSERT_SESSION_RPC, upsert_session)
    manager = _manager(_ProbeTransport(), store)

    await manager.set_session_from_auth("octopus", "tok123")

    assert received[0]["p_envio_user_id"] == USER_ID
    assert received[0]["p_gp51_token"] == "tok123"
    assert store.rows(SESSIONS_TABLE) == []


@pytest.mark.asyncio
async def test_persist_falls_back_to_single_row_upsert() -> None:
    store = MemoryStore()
    manager = _manager(_ProbeTransport(), store)

    await manager.set_session_from_auth("octopus", "tok1")
    await manager.set_session_from_auth("octopus", "tok2")

    rows = store.rows(SESSIONS_TABLE)
    assert len(rows) == 1
    assert rows[0]["gp51_token"] == "tok2"
    assert rows[0]["envio_user_id"] == USER_ID


@pytest.mark.asyncio
async def test_login_and_logout_round_trip() -> None:
    transport = _ProbeTransport()
    manager = _manager(transport)
    changes: list[Session | None] = []
    manager.add_listener(changes.append)

    session = await manager.login()
    assert session.token == "tok-login"
    assert session.username == "octopus"

    await manager.logout()

    assert [action for action, _, _ in transport.calls] == ["login", "logout"]
    assert manager.get_session() is None
    assert changes[0] is not None
    assert changes[-1] is None


def test_session_from_row_requires_token_and_expiry() -> None:
    assert Session.from_row({"username": "octopus", "gp51_token": "t"}) is None
    restored = Session.from_row(
        {
            "username": "octopus",
            "gp51_token": "t",
            "token_expires_at": "2026-01-02T12:00:00Z",
            "is_active": True,
        }
    )
    assert restored is not None
    assert restored.expires_at == datetime(2026, 1, 2, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_invalidate_blocks_token_and_marks_row_inactive() -> None:
    store = MemoryStore()
    transport = _ProbeTransport()
    manager = _manager(transport, store)
    await manager.set_session_from_auth("octopus", "tok123")

    await manager.invalidate("token invalid")

    session = manager.get_session()
    assert session is not None
    assert session.is_valid is False
    assert not manager.is_session_valid()
    assert store.rows(SESSIONS_TABLE)[0]["is_active"] is False
    with pytest.raises(Gp51SessionExpiredError):
        manager.require_token()
    assert await manager.validate_session() is False
    assert transport.calls == []
