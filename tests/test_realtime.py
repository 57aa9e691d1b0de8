from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from pygp51._constants import LIVE_POSITIONS_TABLE
from pygp51.config import Gp51Config
from pygp51.models.position import Position
from pygp51.realtime import (
    ChangeCallback,
    LivePositionSubscriber,
    SupabaseRealtimeFeed,
    build_device_filter,
    extract_change_record,
)
from pygp51.state.events import PositionSource
from pygp51.store.base import Eq
from pygp51.store.memory import MemoryStore
from pygp51.store.repositories import LivePositionRepository


@dataclass
class _FakeHandle:
    device_ids: tuple[str, ...]
    on_change: ChangeCallback
    closed: bool = False

    async def close(self) -> None:
        self.closed = True


@dataclass
class _FakeFeed:
    handles: list[_FakeHandle] = field(default_factory=list)
    on_subscribe: Any = None

    async def subscribe(self, table: str, device_ids: Sequence[str], on_change: ChangeCallback) -> _FakeHandle:
        assert table == LIVE_POSITIONS_TABLE
        handle = _FakeHandle(tuple(device_ids), on_change)
        self.handles.append(handle)
        if self.on_subscribe is not None:
            self.on_subscribe(handle)
        return handle

    @property
    def open_handles(self) -> list[_FakeHandle]:
        return [h for h in self.handles if not h.closed]

    def emit(self, record: dict[str, Any]) -> None:
        """Deliver a change to every open channel, like a server broadcast would."""
        for handle in self.open_handles:
            handle.on_change(record)


def _row(device_id: str, lat: float, ts: str = "2026-01-01T12:00:00+00:00") -> dict[str, Any]:
    return {"device_id": device_id, "latitude": lat, "longitude": lat, "position_timestamp": ts}


async def _store_with(*rows: dict[str, Any]) -> MemoryStore:
    store = MemoryStore()
    if rows:
        await store.insert(LIVE_POSITIONS_TABLE, list(rows))
    return store


@pytest.mark.asyncio
async def test_resubscribe_keeps_one_channel_and_only_new_devices() -> None:
    store = await _store_with(_row("d1", 1.0), _row("d2", 2.0), _row("d3", 3.0))
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed, LivePositionRepository(store))

    await subscriber.subscribe(["d1", "d2"])
    feed.emit(_row("d1", 1.5))
    assert set(subscriber.positions) == {"d1", "d2"}

    await subscriber.subscribe(["d3"])

    assert len(feed.open_handles) == 1
    assert feed.open_handles[0].device_ids == ("d3",)
    assert set(subscriber.positions) == {"d3"}

    feed.emit(_row("d1", 9.0))
    feed.emit(_row("d3", 3.5))

    assert set(subscriber.positions) == {"d3"}
    position = subscriber.get_position("d3")
    assert position is not None
    assert position.latitude == 3.5


@pytest.mark.asyncio
async def test_snapshot_loads_latest_row_per_device() -> None:
    store = await _store_with(
        _row("d1", 1.0, "2026-01-01T10:00:00+00:00"),
        _row("d1", 2.0, "2026-01-01T11:00:00+00:00"),
    )
    subscriber = LivePositionSubscriber(_FakeFeed(), LivePositionRepository(store))

    await subscriber.subscribe(["d1"])

    position = subscriber.get_position("d1")
    assert position is not None
    assert position.latitude == 2.0


@pytest.mark.asyncio
async def test_updates_during_snapshot_load_are_not_overwritten() -> None:
    store = await _store_with(_row("d1", 1.0))
    feed = _FakeFeed()
    feed.on_subscribe = lambda handle: handle.on_change(_row("d1", 7.0, "2026-01-01T12:05:00+00:00"))
    subscriber = LivePositionSubscriber(feed, LivePositionRepository(store))

    await subscriber.subscribe(["d1"])

    position = subscriber.get_position("d1")
    assert position is not None
    assert position.latitude == 7.0


@pytest.mark.asyncio
async def test_resubscribe_snapshot_replaces_changes_from_previous_channel() -> None:
    store = await _store_with(_row("d1", 1.0), _row("d2", 2.0))
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed, LivePositionRepository(store))
    await subscriber.subscribe(["d1"])
    feed.emit(_row("d1", 5.0, "2026-01-01T12:05:00+00:00"))

    await store.update(
        LIVE_POSITIONS_TABLE,
        {"latitude": 9.0, "longitude": 9.0, "position_timestamp": "2026-01-01T12:10:00+00:00"},
        filters=[Eq("device_id", "d1")],
    )
    await subscriber.subscribe(["d1", "d2"])

    position = subscriber.get_position("d1")
    assert position is not None
    assert position.latitude == 9.0


@pytest.mark.asyncio
async def test_updates_are_last_write_wins() -> None:
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed)
    await subscriber.subscribe(["d1"])

    feed.emit(_row("d1", 5.0, "2026-01-01T12:10:00+00:00"))
    feed.emit(_row("d1", 4.0, "2026-01-01T12:00:00+00:00"))

    position = subscriber.get_position("d1")
    assert position is not None
    assert position.latitude == 4.0


@pytest.mark.asyncio
async def test_unsubscribe_closes_channel_and_clears_positions() -> None:
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed)
    await subscriber.subscribe(["d1"])
    feed.emit(_row("d1", 1.0))

    await subscriber.unsubscribe()

    assert not subscriber.is_subscribed
    assert feed.open_handles == []
    assert subscriber.positions == {}


@pytest.mark.asyncio
async def test_subscribe_to_nothing_stays_unsubscribed() -> None:
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed)
    await subscriber.subscribe(["d1"])

    await subscriber.subscribe([])

    assert not subscriber.is_subscribed
    assert feed.open_handles == []


@pytest.mark.asyncio
async def test_malformed_changes_and_failing_listeners_are_contained() -> None:
    feed = _FakeFeed()
    subscriber = LivePositionSubscriber(feed)
    seen: list[Position] = []

    def broken(_position: Position) -> None:
        raise RuntimeError("listener bug")

    subscriber.on_position(broken)
    remove = subscriber.on_position(seen.append)
    await subscriber.subscribe(["d1"])

    feed.emit({"latitude": 1.0})
    feed.emit(_row("d1", 1.0))
    remove()
    feed.emit(_row("d1", 2.0))

    assert [p.latitude for p in seen] == [1.0]
    entry_position = subscriber.get_position("d1")
    assert entry_position is not None
    assert entry_position.latitude == 2.0


@pytest.mark.asyncio
async def test_snapshot_entries_are_tagged_with_source() -> None:
    store = await _store_with(_row("d1", 1.0))
    subscriber = LivePositionSubscriber(_FakeFeed(), LivePositionRepository(store))

    await subscriber.subscribe(["d1"])

    entry = subscriber._store.entry("d1")  # type: ignore[attr-defined]
    assert entry is not None
    assert entry.source is PositionSource.SNAPSHOT


def test_device_filter_syntax() -> None:
    assert build_device_filter(["d1", "d2"]) == "device_id=in.(d1,d2)"


def test_extract_change_record_only_for_inserts_and_updates() -> None:
    insert = {
        "event": "postgres_changes",
        "payload": {"data": {"type": "INSERT", "record": {"device_id": "d1"}}},
    }
    delete = {
        "event": "postgres_changes",
        "payload": {"data": {"type": "DELETE", "old_record": {"device_id": "d1"}}},
    }

    assert extract_change_record(insert) == {"device_id": "d1"}
    assert extract_change_record(delete) is None
    assert extract_change_record({"event": "phx_reply", "payload": {}}) is None


def test_join_payload_filters_postgres_changes() -> None:
    config = Gp51Config(supabase_url="https://proj.supabase.co", supabase_key="anon", access_token="jwt")
    feed = SupabaseRealtimeFeed(config, http_session=None)  # type: ignore[arg-type]

    payload = feed.build_join_payload(LIVE_POSITIONS_TABLE, ["d1"])

    assert payload["access_token"] == "jwt"
    assert payload["config"]["postgres_changes"] == [
        {"event": "*", "schema": "public", "table": "live_positions", "filter": "device_id=in.(d1)"}
    ]
    assert feed._ws_url == "wss://proj.supabase.co/realtime/v1/websocket"  # type: ignore[attr-defined]
