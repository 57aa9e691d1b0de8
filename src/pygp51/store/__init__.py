"""Persistence layer: Supabase PostgREST and an in-memory equivalent."""

from pygp51.store.base import Eq, Filter, In, NotIn, Row, Store
from pygp51.store.memory import MemoryStore
from pygp51.store.postgrest import PostgrestStore
from pygp51.store.repositories import (
    DeviceRepository,
    LivePositionRepository,
    SessionRepository,
    resolve_app_user_id,
)

__all__ = [
    "DeviceRepository",
    "Eq",
    "Filter",
    "In",
    "LivePositionRepository",
    "MemoryStore",
    "NotIn",
    "PostgrestStore",
    "Row",
    "SessionRepository",
    "Store",
    "resolve_app_user_id",
]
