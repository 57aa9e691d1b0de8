"""Live positions over the Supabase realtime change feed.

:class:`LivePositionSubscriber` keeps the latest ``live_positions`` row of
a chosen set of devices in memory. It holds exactly one feed channel at a
time; subscribing again replaces the channel and drops positions of
devices that are no longer watched.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

import aiohttp

from pygp51._constants import LIVE_POSITIONS_TABLE
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51PersistenceError, Gp51RealtimeError
from pygp51.models.position import Position
from pygp51.state.events import PositionSource
from pygp51.state.store import PositionStore
from pygp51.store.repositories import LivePositionRepository

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict[str, Any]], None]
PositionListener = Callable[[Position], None]

_CHANGE_TYPES = frozenset({"INSERT", "UPDATE"})


class FeedHandle(Protocol):
    """One open channel of a :class:`ChangeFeed`."""

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    """Row-level change notifications for a table, filtered by device id."""

    async def subscribe(
        self,
        table: str,
        device_ids: Sequence[str],
        on_change: ChangeCallback,
    ) -> FeedHandle: ...


def build_device_filter(device_ids: Sequence[str]) -> str:
    """``postgres_changes`` filter limiting a channel to *device_ids*."""
    return f"device_id=in.({','.join(str(d) for d in device_ids)})"


def extract_change_record(message: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return the new row of an INSERT/UPDATE ``postgres_changes`` message."""
    if message.get("event") != "postgres_changes":
        return None
    payload = message.get("payload")
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or data.get("type") not in _CHANGE_TYPES:
        return None
    record = data.get("record")
    return record if isinstance(record, dict) else None


class _RealtimeChannel:
    """Websocket plus its reader and heartbeat tasks."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        topic: str,
        on_change: ChangeCallback,
        *,
        heartbeat: float,
        next_ref: Callable[[], str],
    ) -> None:
        self._ws = ws
        self._topic = topic
        self._on_change = on_change
        self._heartbeat = heartbeat
        self._next_ref = next_ref
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._ws.closed

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        await self._ws.send_json({"topic": topic, "event": event, "payload": payload, "ref": self._next_ref()})

    async def _heartbeat_loop(self) -> None:
        while not self._ws.closed:
            await asyncio.sleep(self._heartbeat)
            try:
                await self._send("phoenix", "heartbeat", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError):
                _logger.warning("Realtime heartbeat failed on %s", self._topic, exc_info=True)
                return

    async def _read_loop(self) -> None:
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    _logger.warning("Realtime socket error on %s: %r", self._topic, self._ws.exception())
                continue
            try:
                message = json.loads(msg.data)
            except json.JSONDecodeError:
                _logger.debug("Ignoring non-JSON realtime frame")
                continue
            if not isinstance(message, dict):
                continue
            event = message.get("event")
            if event in ("phx_error", "phx_close") and message.get("topic") == self._topic:
                _logger.warning("Realtime channel %s reported %s", self._topic, event)
                continue
            record = extract_change_record(message)
            if record is None:
                continue
            try:
                self._on_change(record)
            except Exception:
                _logger.warning("Realtime change handler failed", exc_info=True)
        if not self._closed:
            _logger.warning("Realtime socket for %s closed by server", self._topic)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._ws.closed:
            with contextlib.suppress(aiohttp.ClientError, ConnectionError, RuntimeError):
                await self._send(self._topic, "phx_leave", {})
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._ws.close()
        _logger.debug("Realtime channel %s closed", self._topic)


class SupabaseRealtimeFeed:
    """Supabase realtime (Phoenix protocol) over an aiohttp websocket.

    Each :meth:`subscribe` opens its own socket and joins
    ``realtime:public:<table>`` with a ``postgres_changes`` filter on
    ``device_id``. The join must be acknowledged within
    ``config.request_timeout`` seconds.
    """

    def __init__(self, config: Gp51Config, http_session: aiohttp.ClientSession) -> None:
        url, key = config.require_supabase()
        ws_base = url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        self._ws_url = f"{ws_base}/realtime/v1/websocket"
        self._key = key
        self._access_token = config.access_token or key
        self._heartbeat = config.realtime_heartbeat
        self._join_timeout = config.request_timeout
        self._http = http_session
        self._refs = itertools.count(1)

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def build_join_payload(self, table: str, device_ids: Sequence[str]) -> dict[str, Any]:
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "*",
                        "schema": "public",
                        "table": table,
                        "filter": build_device_filter(device_ids),
                    }
                ],
            },
            "access_token": self._access_token,
        }

    async def subscribe(
        self,
        table: str,
        device_ids: Sequence[str],
        on_change: ChangeCallback,
    ) -> FeedHandle:
        topic = f"realtime:public:{table}"
        try:
            ws = await self._http.ws_connect(
                self._ws_url,
                params={"apikey": self._key, "vsn": "1.0.0"},
                heartbeat=None,
            )
        except aiohttp.ClientError as exc:
            raise Gp51RealtimeError(f"Could not open realtime socket: {exc!r}") from exc

        join_ref = self._next_ref()
        try:
            await ws.send_json(
                {
                    "topic": topic,
                    "event": "phx_join",
                    "payload": self.build_join_payload(table, device_ids),
                    "ref": join_ref,
                }
            )
            await asyncio.wait_for(self._await_join_reply(ws, topic, join_ref), timeout=self._join_timeout)
        except TimeoutError as exc:
            await ws.close()
            raise Gp51RealtimeError(f"Timed out joining {topic}") from exc
        except aiohttp.ClientError as exc:
            await ws.close()
            raise Gp51RealtimeError(f"Realtime join failed: {exc!r}") from exc
        except Gp51RealtimeError:
            await ws.close()
            raise

        channel = _RealtimeChannel(ws, topic, on_change, heartbeat=self._heartbeat, next_ref=self._next_ref)
        channel.start()
        _logger.info("Joined %s for %d device(s)", topic, len(device_ids))
        return channel

    @staticmethod
    async def _await_join_reply(ws: aiohttp.ClientWebSocketResponse, topic: str, join_ref: str) -> None:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                message = json.loads(msg.data)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue
            if message.get("event") != "phx_reply" or message.get("ref") != join_ref:
                continue
            payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
            if payload.get("status") == "ok":
                return
            raise Gp51RealtimeError(f"Join of {topic} rejected: {payload.get('response')!r}")
        raise Gp51RealtimeError(f"Realtime socket closed while joining {topic}")


class LivePositionSubscriber:
    """Latest position per watched device, fed by a :class:`ChangeFeed`.

    Parameters
    ----------
    feed : ChangeFeed
        Source of ``live_positions`` change notifications.
    repository : LivePositionRepository or None
        Used to load the initial snapshot on every subscribe.
    store : PositionStore or None
        Backing position map; a private one is created when omitted.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        repository: LivePositionRepository | None = None,
        *,
        store: PositionStore | None = None,
    ) -> None:
        self._feed = feed
        self._repository = repository
        self._store = store if store is not None else PositionStore()
        self._handle: FeedHandle | None = None
        self._device_ids: frozenset[str] = frozenset()
        # Devices the current channel has delivered a change for.
        self._live_since_subscribe: set[str] = set()
        self._lock = asyncio.Lock()
        self._listeners: list[PositionListener] = []

    @property
    def is_subscribed(self) -> bool:
        return self._handle is not None

    @property
    def device_ids(self) -> frozenset[str]:
        return self._device_ids

    @property
    def positions(self) -> dict[str, Position]:
        return self._store.snapshot()

    def get_position(self, device_id: str) -> Position | None:
        return self._store.get(device_id)

    def on_position(self, listener: PositionListener) -> Callable[[], None]:
        """Register *listener* for every applied position; returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def subscribe(self, device_ids: Sequence[str]) -> None:
        """Watch exactly *device_ids*, replacing any earlier subscription."""
        wanted = list(dict.fromkeys(str(d) for d in device_ids if d))
        async with self._lock:
            await self._close_handle()
            self._live_since_subscribe.clear()
            dropped = self._store.retain(wanted)
            if dropped:
                _logger.debug("Dropped positions of %d unwatched device(s)", len(dropped))
            self._device_ids = frozenset(wanted)
            if not wanted:
                _logger.debug("Subscribe called with no devices; staying unsubscribed")
                return

            self._handle = await self._feed.subscribe(LIVE_POSITIONS_TABLE, wanted, self._handle_change)
            await self._load_snapshot(wanted)

    async def unsubscribe(self) -> None:
        """Close the channel and forget every position."""
        async with self._lock:
            await self._close_handle()
            self._device_ids = frozenset()
            self._live_since_subscribe.clear()
            self._store.clear()

    async def _close_handle(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        try:
            await handle.close()
        except Gp51RealtimeError:
            _logger.warning("Closing realtime channel failed", exc_info=True)

    async def _load_snapshot(self, device_ids: Sequence[str]) -> None:
        if self._repository is None:
            return
        try:
            latest = await self._repository.latest_for(device_ids)
        except Gp51PersistenceError:
            _logger.warning("Loading live position snapshot failed", exc_info=True)
            return
        for position in latest:
            # Changes this channel delivered during the load are newer than the snapshot.
            if position.device_id in self._live_since_subscribe:
                continue
            self._apply(position, PositionSource.SNAPSHOT)
        _logger.debug("Loaded %d snapshot position(s)", len(latest))

    def _handle_change(self, record: dict[str, Any]) -> None:
        try:
            position = Position.model_validate(record)
        except ValueError:
            _logger.warning("Ignoring malformed live_positions change", exc_info=True)
            return
        if position.device_id not in self._device_ids:
            return
        self._live_since_subscribe.add(position.device_id)
        self._apply(position, PositionSource.REALTIME)

    def _apply(self, position: Position, source: PositionSource) -> None:
        self._store.apply_position(position, source)
        for listener in list(self._listeners):
            try:
                listener(position)
            except Exception:
                _logger.warning("Position listener failed", exc_info=True)
