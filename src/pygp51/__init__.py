"""pygp51 - Async Python client for the GP51 GPS tracking API."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pygp51")
except PackageNotFoundError:
    __version__ = "0+local"
from pygp51.client import Gp51Client
from pygp51.config import Gp51Config
from pygp51.exceptions import (
    Gp51ApiError,
    Gp51AuthenticationError,
    Gp51ConfigError,
    Gp51Error,
    Gp51PersistenceError,
    Gp51RealtimeError,
    Gp51SagaError,
    Gp51SessionExpiredError,
    Gp51TransportError,
)
from pygp51.models import (
    AuthToken,
    Device,
    DeviceGroup,
    DeviceStatus,
    Position,
    PositionBatch,
    TrackPoint,
    Trip,
)
from pygp51.realtime import ChangeFeed, LivePositionSubscriber, SupabaseRealtimeFeed
from pygp51.saga import Saga, SagaResult, SagaRunner, SagaStep, import_user_with_vehicles
from pygp51.session import Session, SessionManager
from pygp51.sync import DeviceSync, SyncReport

__all__ = [
    "__version__",
    "AuthToken",
    "ChangeFeed",
    "Device",
    "DeviceGroup",
    "DeviceStatus",
    "DeviceSync",
    "Gp51ApiError",
    "Gp51AuthenticationError",
    "Gp51Client",
    "Gp51Config",
    "Gp51ConfigError",
    "Gp51Error",
    "Gp51PersistenceError",
    "Gp51RealtimeError",
    "Gp51SagaError",
    "Gp51SessionExpiredError",
    "Gp51TransportError",
    "LivePositionSubscriber",
    "Position",
    "PositionBatch",
    "Saga",
    "SagaResult",
    "SagaRunner",
    "SagaStep",
    "Session",
    "SessionManager",
    "SupabaseRealtimeFeed",
    "SyncReport",
    "TrackPoint",
    "Trip",
    "import_user_with_vehicles",
]
