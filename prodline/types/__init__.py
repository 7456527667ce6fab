"""
Type definitions for the production line.
Contains input/output type definitions for the engine and its stores, grouped by module.
"""

from prodline.types.callbacks import (
    CallbackHistoryEntry,
    CallbackPayload,
)
from prodline.types.engine import (
    EngineCursor,
    EngineStatus,
    PositionResult,
    QueueOverview,
)
from prodline.types.item import (
    QueueItemRecord,
    StageHistoryEntry,
)

__all__ = [
    # Item types
    "QueueItemRecord",
    "StageHistoryEntry",
    # Engine types
    "EngineCursor",
    "EngineStatus",
    "PositionResult",
    "QueueOverview",
    # Callback types
    "CallbackPayload",
    "CallbackHistoryEntry",
]
