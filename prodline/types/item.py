"""
Queue item type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from prodline.constants import ItemStatus


@dataclass
class StageHistoryEntry:
    """One stage visit of a queue item."""

    stage: str
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.finished_at is None

    def elapsed_ms(self, current_stage: str, now: datetime) -> int:
        """
        Milliseconds spent in this entry.

        Open entries only count while they belong to the current stage.
        """
        if self.finished_at is not None:
            end = self.finished_at
        elif self.stage == current_stage:
            end = now
        else:
            return 0
        return max(0, int((end - self.started_at).total_seconds() * 1000))


@dataclass
class QueueItemRecord:
    """
    Detached snapshot of a queue item.

    The engine mutates snapshots and hands them back to the store, which
    persists them only while the engine still owns the item.
    """

    id: UUID
    callback_url: str
    status: ItemStatus
    stage: str
    created_at: datetime
    payload: Any = None
    progress: int = 0
    eta_seconds: int | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    heartbeat_at: datetime | None = None
    stage_started_at: datetime | None = None
    history: list[StageHistoryEntry] = field(default_factory=list)
    completed_at: datetime | None = None
    last_callback_at: datetime | None = None
    callback_tries: int = 0
    next_callback_at: datetime | None = None
    updated_at: datetime | None = None

    def is_owned_by(self, worker_id: str) -> bool:
        """Check if the item is in flight under the given engine instance."""
        return self.status == ItemStatus.PROCESSING and self.locked_by == worker_id

    def open_entry(self, stage: str) -> StageHistoryEntry | None:
        """Get the open history entry for a stage, if one exists."""
        for entry in reversed(self.history):
            if entry.stage == stage and entry.is_open:
                return entry
        return None

    def close_open_entry(self, now: datetime) -> StageHistoryEntry | None:
        """Close the last history entry if it is still open."""
        if self.history and self.history[-1].is_open:
            self.history[-1].finished_at = now
            return self.history[-1]
        return None
