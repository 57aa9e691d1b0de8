"""Persistence interface shared by the Supabase and in-memory stores.

The surface mirrors what the application does with its generated
Supabase client: table ``select``/``insert``/``upsert``/``update``/
``delete`` with simple column filters, plus ``rpc`` calls.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

Row = dict[str, Any]

_RESERVED = set(',.:()" ')


def _quote(value: Any) -> str:
    text = "true" if value is True else "false" if value is False else str(value)
    if any(ch in _RESERVED for ch in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


@dataclasses.dataclass(frozen=True)
class Eq:
    """``column = value``."""

    column: str
    value: Any

    def to_param(self) -> tuple[str, str]:
        return self.column, f"eq.{_quote(self.value)}"

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.column) == self.value


@dataclasses.dataclass(frozen=True)
class In:
    """``column IN (values)``."""

    column: str
    values: tuple[Any, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))

    def to_param(self) -> tuple[str, str]:
        return self.column, f"in.({','.join(_quote(v) for v in self.values)})"

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.column) in self.values


class NotIn(In):
    """``column NOT IN (values)``."""

    def to_param(self) -> tuple[str, str]:
        column, value = super().to_param()
        return column, f"not.{value}"

    def matches(self, row: Mapping[str, Any]) -> bool:
        return not super().matches(row)


Filter = Eq | In | NotIn


class Store(Protocol):
    """Structural persistence interface used by repositories.

    Every method raises :class:`pygp51.exceptions.Gp51PersistenceError` on
    failure; none of them swallow errors.
    """

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]: ...

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        on_conflict: str,
    ) -> list[Row]: ...

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Sequence[Filter],
    ) -> list[Row]: ...

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]: ...

    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any: ...
