"""
Completion callback payload definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from prodline.constants import ItemStatus
from prodline.types.item import QueueItemRecord


class CallbackHistoryEntry(BaseModel):
    """Stage history entry as sent to callback receivers."""

    model_config = ConfigDict(populate_by_name=True)

    stage: str
    started_at: datetime = Field(alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")


class CallbackPayload(BaseModel):
    """
    Body POSTed to an item's callback URL once it is completed.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    status: ItemStatus
    stage: str
    finished_at: datetime = Field(alias="finishedAt")
    history: list[CallbackHistoryEntry]
    payload: Any = None

    @classmethod
    def from_item(cls, item: QueueItemRecord, now: datetime) -> "CallbackPayload":
        """Build the payload for a completed item."""
        return cls(
            id=item.id,
            status=item.status,
            stage=item.stage,
            finished_at=item.completed_at or now,
            history=[
                CallbackHistoryEntry(
                    stage=entry.stage,
                    started_at=entry.started_at,
                    finished_at=entry.finished_at,
                )
                for entry in item.history
            ],
            payload=item.payload,
        )

    def to_json(self) -> dict[str, Any]:
        """Serialize with the wire field names."""
        return self.model_dump(mode="json", by_alias=True)
