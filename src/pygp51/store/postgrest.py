"""Supabase PostgREST store over aiohttp."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from pygp51._constants import USER_AGENT
from pygp51._redact import redact_for_log
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51PersistenceError
from pygp51.store.base import Filter, Row

_logger = logging.getLogger(__name__)


def build_filter_params(filters: Sequence[Filter]) -> list[tuple[str, str]]:
    """Render filters as PostgREST query parameters (``col=eq.value``)."""
    return [f.to_param() for f in filters]


def build_select_params(
    *,
    filters: Sequence[Filter] = (),
    columns: str = "*",
    order: str | None = None,
    desc: bool = False,
    limit: int | None = None,
) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = [("select", columns)]
    params.extend(build_filter_params(filters))
    if order is not None:
        params.append(("order", f"{order}.{'desc' if desc else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(limit)))
    return params


class PostgrestStore:
    """Table and RPC access against ``{supabase_url}/rest/v1``."""

    def __init__(self, config: Gp51Config, http_session: aiohttp.ClientSession) -> None:
        url, key = config.require_supabase()
        self._rest_url = f"{url}/rest/v1"
        self._key = key
        self._bearer = config.access_token or key
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._key,
            "authorization": f"Bearer {self._bearer}",
            "accept": "application/json",
            "content-type": "application/json",
            "user-agent": USER_AGENT,
        }
        if prefer:
            headers["prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Sequence[tuple[str, str]] = (),
        body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        url = f"{self._rest_url}/{path}"
        data = json.dumps(body, default=str) if body is not None else None
        _logger.debug("%s %s params=%s body=%s", method, url, list(params), redact_for_log(body))
        try:
            async with self._http.request(
                method,
                url,
                params=list(params),
                data=data,
                headers=self._headers(prefer),
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise Gp51PersistenceError(
                        f"{method} {path} failed: HTTP {resp.status}: {text[:200]}",
                        status_code=resp.status,
                        table=path,
                    )
        except Gp51PersistenceError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise Gp51PersistenceError(f"{method} {path} failed: {exc!r}", table=path) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise Gp51PersistenceError(
                f"Invalid JSON from {path}: {text[:200]}",
                status_code=resp.status,
                table=path,
            ) from exc

    @staticmethod
    def _rows(result: Any) -> list[Row]:
        if isinstance(result, list):
            return [r for r in result if isinstance(r, dict)]
        if isinstance(result, dict):
            return [result]
        return []

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = build_select_params(filters=filters, columns=columns, order=order, desc=desc, limit=limit)
        return self._rows(await self._request("GET", table, params=params))

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        result = await self._request("POST", table, body=list(rows), prefer="return=representation")
        return self._rows(result)

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        on_conflict: str,
    ) -> list[Row]:
        result = await self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            body=list(rows),
            prefer="resolution=merge-duplicates,return=representation",
        )
        return self._rows(result)

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Sequence[Filter],
    ) -> list[Row]:
        result = await self._request(
            "PATCH",
            table,
            params=build_filter_params(filters),
            body=dict(values),
            prefer="return=representation",
        )
        return self._rows(result)

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]:
        if not filters:
            raise Gp51PersistenceError(f"refusing unfiltered delete on {table}", status_code=400, table=table)
        result = await self._request(
            "DELETE",
            table,
            params=build_filter_params(filters),
            prefer="return=representation",
        )
        return self._rows(result)

    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any:
        return await self._request("POST", f"rpc/{function}", body=dict(params))
