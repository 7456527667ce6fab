"""
Stage engine type definitions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from prodline.constants import ItemStatus
from prodline.types.item import QueueItemRecord


@dataclass(frozen=True)
class EngineCursor:
    """
    Single-slot cursor of one engine instance.

    Threaded through every tick: the item the instance is driving and the
    deadline of its current stage.
    """

    active_item_id: UUID | None = None
    stage_deadline: datetime | None = None

    @property
    def is_idle(self) -> bool:
        return self.active_item_id is None


@dataclass
class EngineStatus:
    """Aggregate view of the production line."""

    processing: QueueItemRecord | None
    queue_size: int
    average_item_seconds: int
    current_item_eta: int | None


@dataclass
class PositionResult:
    """Queue position of an item. Position 0 means the item is processing or completed."""

    position: int | None
    status: ItemStatus | None

    @property
    def found(self) -> bool:
        return self.status is not None

    @classmethod
    def not_found(cls) -> "PositionResult":
        return cls(position=None, status=None)


@dataclass
class QueueOverview:
    """Per-status counts and the items currently in flight."""

    counts: dict[str, int]
    processing_items: list[QueueItemRecord] = field(default_factory=list)
