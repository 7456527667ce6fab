"""
SQLAlchemy backed item store.

Each operation runs in its own short session so the engine never holds a
transaction open across ticks.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prodline.constants import ItemStatus, Stage
from prodline.db.connection import get_session_context
from prodline.db.models import QueueItem
from prodline.db.repository import (
    QueueItemRepository,
    deserialize_history,
    serialize_history,
)
from prodline.errors import InvalidItemError
from prodline.types.item import QueueItemRecord


def to_record(row: QueueItem) -> QueueItemRecord:
    """Detach an ORM row into a plain record."""
    return QueueItemRecord(
        id=row.id,
        callback_url=row.callback_url,
        status=ItemStatus(row.status),
        stage=row.stage,
        created_at=row.created_at,
        payload=row.payload,
        progress=row.progress,
        eta_seconds=row.eta_seconds,
        locked_by=row.locked_by,
        locked_at=row.locked_at,
        heartbeat_at=row.heartbeat_at,
        stage_started_at=row.stage_started_at,
        history=deserialize_history(row.history),
        completed_at=row.completed_at,
        last_callback_at=row.last_callback_at,
        callback_tries=row.callback_tries,
        next_callback_at=row.next_callback_at,
        updated_at=row.updated_at,
    )


class SqlItemStore:
    """
    Item store over a relational database.

    Implements the ItemStore contract with QueueItemRepository.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        first_stage: str = Stage.QUEUED.value,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for database sessions.
            first_stage: Stage new and reset items wait in.
        """
        self._session_factory = session_factory
        self._first_stage = first_stage

    async def create_item(
        self,
        payload: Any,
        callback_url: str,
        created_at: datetime | None = None,
    ) -> QueueItemRecord:
        if not callback_url:
            raise InvalidItemError("callback_url is required")

        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).create_item(
                payload=payload,
                callback_url=callback_url,
                first_stage=self._first_stage,
                created_at=created_at or datetime.now(UTC),
            )
            return to_record(row)

    async def get_item(self, item_id: UUID) -> QueueItemRecord | None:
        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).get_item(item_id)
            return to_record(row) if row else None

    async def adopt_orphan(self, worker_id: str, now: datetime) -> QueueItemRecord | None:
        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).adopt_orphan(worker_id, now)
            return to_record(row) if row else None

    async def claim_next_pending(
        self,
        worker_id: str,
        now: datetime,
        first_stage: str,
        eta_seconds: int,
    ) -> QueueItemRecord | None:
        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).claim_next_pending(
                worker_id=worker_id,
                now=now,
                first_stage=first_stage,
                eta_seconds=eta_seconds,
            )
            return to_record(row) if row else None

    async def save_owned(self, item: QueueItemRecord, worker_id: str, now: datetime) -> bool:
        """
        Persist engine-owned fields of an item.

        Returns:
            False if the worker no longer owns the item.
        """
        values = {
            "status": item.status,
            "stage": item.stage,
            "progress": item.progress,
            "eta_seconds": item.eta_seconds,
            "locked_by": item.locked_by,
            "locked_at": item.locked_at,
            "heartbeat_at": now,
            "stage_started_at": item.stage_started_at,
            "history": serialize_history(item.history),
            "completed_at": item.completed_at,
            "next_callback_at": item.next_callback_at,
            "updated_at": now,
        }
        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).update_owned(item.id, worker_id, values)
            return row is not None

    async def count_items(
        self,
        status: ItemStatus,
        created_before: datetime | None = None,
    ) -> int:
        async with get_session_context(self._session_factory) as session:
            return await QueueItemRepository(session).count_items(status, created_before)

    async def find_processing(self) -> QueueItemRecord | None:
        items = await self.list_items(status=ItemStatus.PROCESSING, limit=1)
        return items[0] if items else None

    async def list_items(
        self,
        status: ItemStatus | None = None,
        limit: int = 50,
        newest_first: bool = False,
    ) -> list[QueueItemRecord]:
        async with get_session_context(self._session_factory) as session:
            rows = await QueueItemRepository(session).list_items(status, limit, newest_first)
            return [to_record(row) for row in rows]

    async def record_callback_success(self, item_id: UUID, delivered_at: datetime) -> None:
        async with get_session_context(self._session_factory) as session:
            await QueueItemRepository(session).record_callback_success(item_id, delivered_at)

    async def record_callback_failure(
        self,
        item_id: UUID,
        tries: int,
        next_attempt_at: datetime | None,
        now: datetime,
    ) -> None:
        async with get_session_context(self._session_factory) as session:
            await QueueItemRepository(session).record_callback_failure(
                item_id, tries, next_attempt_at, now
            )

    async def claim_callback_retry(
        self,
        now: datetime,
        lease_until: datetime,
        max_tries: int,
    ) -> QueueItemRecord | None:
        async with get_session_context(self._session_factory) as session:
            row = await QueueItemRepository(session).claim_callback_retry(now, lease_until, max_tries)
            return to_record(row) if row else None

    async def release_stale_locks(self, stale_before: datetime, now: datetime) -> int:
        async with get_session_context(self._session_factory) as session:
            return await QueueItemRepository(session).release_stale_locks(stale_before, now)

    async def reset_processing(self, now: datetime) -> int:
        async with get_session_context(self._session_factory) as session:
            return await QueueItemRepository(session).reset_processing(self._first_stage, now)

    async def count_by_status(self) -> dict[str, int]:
        async with get_session_context(self._session_factory) as session:
            return await QueueItemRepository(session).count_by_status()
