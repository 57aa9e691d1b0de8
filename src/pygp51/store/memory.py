"""In-process store with Supabase-compatible semantics.

Used by the test-suite and for running the client without a Supabase
project. Rows get an ``id`` and ``created_at`` like the hosted tables do.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from pygp51.exceptions import Gp51PersistenceError
from pygp51.store.base import Filter, Row

RpcHandler = Callable[[Mapping[str, Any]], Awaitable[Any]]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _matches(row: Mapping[str, Any], filters: Sequence[Filter]) -> bool:
    return all(f.matches(row) for f in filters)


class MemoryStore:
    """Dict-of-lists store. Not shared between processes."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = {}
        self._rpcs: dict[str, RpcHandler] = {}
        self.calls: list[tuple[str, str]] = []

    def rows(self, table: str) -> list[Row]:
        """Copy of every row in *table* (test helper)."""
        return copy.deepcopy(self._tables.get(table, []))

    def register_rpc(self, function: str, handler: RpcHandler) -> None:
        self._rpcs[function] = handler

    def _table(self, table: str) -> list[Row]:
        return self._tables.setdefault(table, [])

    @staticmethod
    def _with_defaults(row: Mapping[str, Any]) -> Row:
        stored = copy.deepcopy(dict(row))
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", _utcnow_iso())
        return stored

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
        self.calls.append(("select", table))
        rows = [r for r in self._table(table) if _matches(r, filters)]
        if order is not None:
            # Missing values sort before present ones.
            rows.sort(key=lambda r: (r.get(order) is not None, r.get(order) or ""), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return copy.deepcopy(rows)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        self.calls.append(("insert", table))
        stored = [self._with_defaults(r) for r in rows]
        self._table(table).extend(stored)
        return copy.deepcopy(stored)

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        on_conflict: str,
    ) -> list[Row]:
        self.calls.append(("upsert", table))
        keys = [k.strip() for k in on_conflict.split(",")]
        existing = self._table(table)
        result: list[Row] = []
        for row in rows:
            if any(k not in row for k in keys):
                raise Gp51PersistenceError(
                    f"upsert into {table} missing conflict column(s) {keys}",
                    status_code=400,
                    table=table,
                )
            match = next(
                (r for r in existing if all(r.get(k) == row[k] for k in keys)),
                None,
            )
            if match is None:
                stored = self._with_defaults(row)
                existing.append(stored)
            else:
                match.update(copy.deepcopy(dict(row)))
                stored = match
            result.append(copy.deepcopy(stored))
        return result

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Sequence[Filter],
    ) -> list[Row]:
        self.calls.append(("update", table))
        updated: list[Row] = []
        for row in self._table(table):
            if _matches(row, filters):
                row.update(copy.deepcopy(dict(values)))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]:
        self.calls.append(("delete", table))
        if not filters:
            raise Gp51PersistenceError(f"refusing unfiltered delete on {table}", status_code=400, table=table)
        rows = self._table(table)
        removed = [r for r in rows if _matches(r, filters)]
        self._tables[table] = [r for r in rows if not _matches(r, filters)]
        return copy.deepcopy(removed)

    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any:
        self.calls.append(("rpc", function))
        handler = self._rpcs.get(function)
        if handler is None:
            raise Gp51PersistenceError(f"function {function} not found", status_code=404, table=f"rpc/{function}")
        return await handler(params)
