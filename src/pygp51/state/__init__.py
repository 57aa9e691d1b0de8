"""State/store layer.

This package is the single source of truth for how positions arriving
from snapshot loads, the realtime change feed and vendor polling are
merged into a deterministic per-device view.
"""

from pygp51.state.events import PositionEvent, PositionSource
from pygp51.state.store import PositionEntry, PositionStore

__all__ = ["PositionEntry", "PositionEvent", "PositionSource", "PositionStore"]
