"""
Queue item repository for database operations.
Implements the core data access patterns for the production line.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prodline.constants import ItemStatus
from prodline.db.models import QueueItem
from prodline.types.item import StageHistoryEntry

logger = logging.getLogger(__name__)

# Update statements carry their own WHERE criteria and RETURN fresh rows
_RETURNING_OPTIONS = {"synchronize_session": "fetch", "populate_existing": True}


def serialize_history(entries: Sequence[StageHistoryEntry]) -> list[dict[str, Any]]:
    """Convert history entries into JSON-storable dicts."""
    return [
        {
            "stage": entry.stage,
            "started_at": entry.started_at.isoformat(),
            "finished_at": entry.finished_at.isoformat() if entry.finished_at else None,
        }
        for entry in entries
    ]


def deserialize_history(raw: list[dict[str, Any]] | None) -> list[StageHistoryEntry]:
    """Convert stored history dicts back into entries."""
    return [
        StageHistoryEntry(
            stage=entry["stage"],
            started_at=datetime.fromisoformat(entry["started_at"]),
            finished_at=(
                datetime.fromisoformat(entry["finished_at"])
                if entry.get("finished_at")
                else None
            ),
        )
        for entry in raw or []
    ]


class QueueItemRepository:
    """
    Repository for queue item database operations.

    Implements atomic operations for:
    - FIFO claim with FOR UPDATE SKIP LOCKED
    - Orphan adoption
    - Owner-guarded state writes
    - Callback retry scheduling
    - Stale lock release and administrative reset
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_item(
        self,
        payload: Any,
        callback_url: str,
        first_stage: str,
        created_at: datetime,
    ) -> QueueItem:
        """
        Insert a new PENDING item.

        Args:
            payload: Opaque caller data.
            callback_url: Completion notification target.
            first_stage: Stage the item waits in.
            created_at: FIFO timestamp.

        Returns:
            The created QueueItem.
        """
        item = QueueItem(
            payload=payload,
            callback_url=callback_url,
            status=ItemStatus.PENDING,
            stage=first_stage,
            progress=0,
            history=[],
            callback_tries=0,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(item)
        await self._session.flush()

        logger.info(
            "Created queue item",
            extra={"item_id": str(item.id)}
        )
        return item

    async def get_item(self, item_id: UUID) -> QueueItem | None:
        """
        Get an item by ID.

        Args:
            item_id: The item UUID.

        Returns:
            The QueueItem or None if not found.
        """
        stmt = select(QueueItem).where(QueueItem.id == item_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def adopt_orphan(self, worker_id: str, now: datetime) -> QueueItem | None:
        """
        Take over an item left PROCESSING without an owner.

        Stage, history and progress are left untouched so the item resumes
        where it stopped.

        Args:
            worker_id: The adopting engine instance.
            now: Current time.

        Returns:
            The adopted QueueItem or None if there are no orphans.
        """
        candidate = (
            select(QueueItem.id)
            .where(
                and_(
                    QueueItem.status == ItemStatus.PROCESSING,
                    QueueItem.locked_by.is_(None),
                )
            )
            .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(QueueItem)
            .where(
                and_(
                    QueueItem.id == candidate,
                    QueueItem.status == ItemStatus.PROCESSING,
                    QueueItem.locked_by.is_(None),
                )
            )
            .values(
                locked_by=worker_id,
                locked_at=now,
                heartbeat_at=now,
                updated_at=now,
            )
            .returning(QueueItem)
            .execution_options(**_RETURNING_OPTIONS)
        )

        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()

        if item:
            logger.info(
                "Adopted orphaned item",
                extra={"item_id": str(item.id), "worker_id": worker_id, "stage": item.stage}
            )

        return item

    async def claim_next_pending(
        self,
        worker_id: str,
        now: datetime,
        first_stage: str,
        eta_seconds: int,
    ) -> QueueItem | None:
        """
        Claim the oldest PENDING item using FOR UPDATE SKIP LOCKED.

        This is the critical path for item distribution. The selection and the
        transition happen in one statement so two engines can never claim the
        same item.

        Args:
            worker_id: The claiming engine instance.
            now: Current time.
            first_stage: Stage the claimed item starts in.
            eta_seconds: Nominal pipeline length.

        Returns:
            The claimed QueueItem or None if the queue is empty.
        """
        candidate = (
            select(QueueItem.id)
            .where(QueueItem.status == ItemStatus.PENDING)
            .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(QueueItem)
            .where(
                and_(
                    QueueItem.id == candidate,
                    QueueItem.status == ItemStatus.PENDING,
                )
            )
            .values(
                status=ItemStatus.PROCESSING,
                stage=first_stage,
                locked_by=worker_id,
                locked_at=now,
                heartbeat_at=now,
                stage_started_at=now,
                history=serialize_history([StageHistoryEntry(stage=first_stage, started_at=now)]),
                progress=0,
                eta_seconds=eta_seconds,
                updated_at=now,
            )
            .returning(QueueItem)
            .execution_options(**_RETURNING_OPTIONS)
        )

        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()

        if item:
            logger.info(
                "Claimed pending item",
                extra={"item_id": str(item.id), "worker_id": worker_id}
            )

        return item

    async def update_owned(
        self,
        item_id: UUID,
        worker_id: str,
        values: dict[str, Any],
    ) -> QueueItem | None:
        """
        Write item fields only while the worker still owns the item.

        Args:
            item_id: The item UUID.
            worker_id: The engine instance that must hold the lock.
            values: Column values to write.

        Returns:
            Updated QueueItem or None if ownership was lost.
        """
        stmt = (
            update(QueueItem)
            .where(
                and_(
                    QueueItem.id == item_id,
                    QueueItem.status == ItemStatus.PROCESSING,
                    QueueItem.locked_by == worker_id,
                )
            )
            .values(**values)
            .returning(QueueItem)
            .execution_options(**_RETURNING_OPTIONS)
        )

        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()

        if item is None:
            logger.warning(
                "Worker doesn't own item",
                extra={"item_id": str(item_id), "worker_id": worker_id}
            )

        return item

    async def count_items(
        self,
        status: ItemStatus,
        created_before: datetime | None = None,
    ) -> int:
        """
        Count items in a status, optionally created before a timestamp.

        Args:
            status: Status filter.
            created_before: Optional strict upper bound on created_at.

        Returns:
            Number of matching items.
        """
        filters = [QueueItem.status == status]
        if created_before is not None:
            filters.append(QueueItem.created_at < created_before)

        stmt = select(func.count()).select_from(QueueItem).where(and_(*filters))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def list_items(
        self,
        status: ItemStatus | None = None,
        limit: int = 50,
        newest_first: bool = False,
    ) -> Sequence[QueueItem]:
        """
        List items in creation order.

        Args:
            status: Optional status filter.
            limit: Maximum number of items to return.
            newest_first: Reverse the FIFO order.

        Returns:
            Matching items.
        """
        order = QueueItem.created_at.desc() if newest_first else QueueItem.created_at.asc()
        stmt = select(QueueItem).order_by(order).limit(limit)
        if status is not None:
            stmt = stmt.where(QueueItem.status == status)

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def record_callback_success(self, item_id: UUID, delivered_at: datetime) -> None:
        """
        Stamp a delivered completion callback.

        Args:
            item_id: The item UUID.
            delivered_at: Delivery time.
        """
        stmt = (
            update(QueueItem)
            .where(
                and_(
                    QueueItem.id == item_id,
                    QueueItem.last_callback_at.is_(None),
                )
            )
            .values(
                last_callback_at=delivered_at,
                next_callback_at=None,
                updated_at=delivered_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def record_callback_failure(
        self,
        item_id: UUID,
        tries: int,
        next_attempt_at: datetime | None,
        now: datetime,
    ) -> None:
        """
        Record a failed callback attempt.

        Args:
            item_id: The item UUID.
            tries: Attempts made so far.
            next_attempt_at: When to retry, None to give up.
            now: Current time.
        """
        stmt = (
            update(QueueItem)
            .where(QueueItem.id == item_id)
            .values(
                callback_tries=tries,
                next_callback_at=next_attempt_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

        logger.info(
            "Callback attempt failed",
            extra={"item_id": str(item_id), "tries": tries, "retry": next_attempt_at is not None}
        )

    async def claim_callback_retry(
        self,
        now: datetime,
        lease_until: datetime,
        max_tries: int,
    ) -> QueueItem | None:
        """
        Claim one completed item whose callback retry is due.

        The retry gate is pushed to `lease_until` in the same statement so
        concurrent engines never retry the same item at once.

        Args:
            now: Current time.
            lease_until: New retry gate while the attempt is in flight.
            max_tries: Attempt budget per item.

        Returns:
            The claimed QueueItem or None.
        """
        due_filter = and_(
            QueueItem.status == ItemStatus.COMPLETED,
            QueueItem.last_callback_at.is_(None),
            QueueItem.next_callback_at.is_not(None),
            QueueItem.next_callback_at <= now,
            QueueItem.callback_tries < max_tries,
        )
        candidate = (
            select(QueueItem.id)
            .where(due_filter)
            .order_by(QueueItem.next_callback_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(QueueItem)
            .where(and_(QueueItem.id == candidate, due_filter))
            .values(next_callback_at=lease_until)
            .returning(QueueItem)
            .execution_options(**_RETURNING_OPTIONS)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def release_stale_locks(self, stale_before: datetime, now: datetime) -> int:
        """
        Release locks whose owner stopped heartbeating.

        This is called by the reaper to handle engine crashes. The items stay
        PROCESSING and become orphans that any engine can adopt.

        Args:
            stale_before: Heartbeats older than this are considered dead.
            now: Current time.

        Returns:
            Number of released items.
        """
        stmt = (
            update(QueueItem)
            .where(
                and_(
                    QueueItem.status == ItemStatus.PROCESSING,
                    QueueItem.locked_by.is_not(None),
                    or_(
                        QueueItem.heartbeat_at < stale_before,
                        and_(
                            QueueItem.heartbeat_at.is_(None),
                            QueueItem.locked_at < stale_before,
                        ),
                    ),
                )
            )
            .values(
                locked_by=None,
                locked_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Released {count} stale item locks")

        return count

    async def reset_processing(self, first_stage: str, now: datetime) -> int:
        """
        Return every PROCESSING item to PENDING and clear its lock.

        Args:
            first_stage: Stage pending items wait in.
            now: Current time.

        Returns:
            Number of reset items.
        """
        stmt = (
            update(QueueItem)
            .where(QueueItem.status == ItemStatus.PROCESSING)
            .values(
                status=ItemStatus.PENDING,
                stage=first_stage,
                progress=0,
                eta_seconds=None,
                locked_by=None,
                locked_at=None,
                heartbeat_at=None,
                stage_started_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount
        logger.info(f"Reset {count} processing items to pending")
        return count

    async def count_by_status(self) -> dict[str, int]:
        """
        Get item counts by status.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = select(QueueItem.status, func.count()).group_by(QueueItem.status)
        result = await self._session.execute(stmt)

        counts = {status.value: 0 for status in ItemStatus}
        for status, count in result.all():
            counts[ItemStatus(status).value] = count
        return counts
