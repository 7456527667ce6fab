"""
In-memory item store.

Non-network store with the same conditional-update semantics as the SQL
store. Every mutation runs under one asyncio lock, which makes each
conditional update atomic for all engines sharing the instance.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from prodline.constants import ItemStatus, Stage
from prodline.errors import InvalidItemError
from prodline.types.item import QueueItemRecord, StageHistoryEntry


@dataclass
class InMemoryItemStore:
    """Deterministic item store for simulations and tests."""

    first_stage: str = Stage.QUEUED.value
    items: dict[UUID, QueueItemRecord] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _sequence: dict[UUID, int] = field(default_factory=dict, repr=False)

    def _fifo_key(self, item: QueueItemRecord) -> tuple[datetime, int]:
        return item.created_at, self._sequence[item.id]

    def _oldest(self, predicate) -> QueueItemRecord | None:
        matches = [item for item in self.items.values() if predicate(item)]
        if not matches:
            return None
        return min(matches, key=self._fifo_key)

    async def create_item(
        self,
        payload: Any,
        callback_url: str,
        created_at: datetime | None = None,
    ) -> QueueItemRecord:
        if not callback_url:
            raise InvalidItemError("callback_url is required")

        async with self._lock:
            now = created_at or datetime.now(UTC)
            item = QueueItemRecord(
                id=uuid4(),
                callback_url=callback_url,
                status=ItemStatus.PENDING,
                stage=self.first_stage,
                created_at=now,
                payload=copy.deepcopy(payload),
                updated_at=now,
            )
            self._sequence[item.id] = len(self._sequence)
            self.items[item.id] = item
            return copy.deepcopy(item)

    async def put(self, item: QueueItemRecord) -> None:
        """Insert or overwrite a record verbatim, for seeding fixtures."""
        async with self._lock:
            self._sequence.setdefault(item.id, len(self._sequence))
            self.items[item.id] = copy.deepcopy(item)

    async def get_item(self, item_id: UUID) -> QueueItemRecord | None:
        async with self._lock:
            item = self.items.get(item_id)
            return copy.deepcopy(item) if item else None

    async def adopt_orphan(self, worker_id: str, now: datetime) -> QueueItemRecord | None:
        async with self._lock:
            item = self._oldest(
                lambda i: i.status == ItemStatus.PROCESSING and i.locked_by is None
            )
            if item is None:
                return None
            item.locked_by = worker_id
            item.locked_at = now
            item.heartbeat_at = now
            item.updated_at = now
            return copy.deepcopy(item)

    async def claim_next_pending(
        self,
        worker_id: str,
        now: datetime,
        first_stage: str,
        eta_seconds: int,
    ) -> QueueItemRecord | None:
        async with self._lock:
            item = self._oldest(lambda i: i.status == ItemStatus.PENDING)
            if item is None:
                return None
            item.status = ItemStatus.PROCESSING
            item.stage = first_stage
            item.locked_by = worker_id
            item.locked_at = now
            item.heartbeat_at = now
            item.stage_started_at = now
            item.history = [StageHistoryEntry(stage=first_stage, started_at=now)]
            item.progress = 0
            item.eta_seconds = eta_seconds
            item.updated_at = now
            return copy.deepcopy(item)

    async def save_owned(self, item: QueueItemRecord, worker_id: str, now: datetime) -> bool:
        async with self._lock:
            stored = self.items.get(item.id)
            if stored is None or not stored.is_owned_by(worker_id):
                return False
            stored.status = item.status
            stored.stage = item.stage
            stored.progress = item.progress
            stored.eta_seconds = item.eta_seconds
            stored.locked_by = item.locked_by
            stored.locked_at = item.locked_at
            stored.heartbeat_at = now
            stored.stage_started_at = item.stage_started_at
            stored.history = copy.deepcopy(item.history)
            stored.completed_at = item.completed_at
            stored.next_callback_at = item.next_callback_at
            stored.updated_at = now
            return True

    async def count_items(
        self,
        status: ItemStatus,
        created_before: datetime | None = None,
    ) -> int:
        async with self._lock:
            return sum(
                1
                for item in self.items.values()
                if item.status == status
                and (created_before is None or item.created_at < created_before)
            )

    async def find_processing(self) -> QueueItemRecord | None:
        async with self._lock:
            item = self._oldest(lambda i: i.status == ItemStatus.PROCESSING)
            return copy.deepcopy(item) if item else None

    async def list_items(
        self,
        status: ItemStatus | None = None,
        limit: int = 50,
        newest_first: bool = False,
    ) -> list[QueueItemRecord]:
        async with self._lock:
            items = sorted(
                (i for i in self.items.values() if status is None or i.status == status),
                key=self._fifo_key,
                reverse=newest_first,
            )
            return [copy.deepcopy(item) for item in items[:limit]]

    async def record_callback_success(self, item_id: UUID, delivered_at: datetime) -> None:
        async with self._lock:
            item = self.items.get(item_id)
            if item is None or item.last_callback_at is not None:
                return
            item.last_callback_at = delivered_at
            item.next_callback_at = None
            item.updated_at = delivered_at

    async def record_callback_failure(
        self,
        item_id: UUID,
        tries: int,
        next_attempt_at: datetime | None,
        now: datetime,
    ) -> None:
        async with self._lock:
            item = self.items.get(item_id)
            if item is None:
                return
            item.callback_tries = tries
            item.next_callback_at = next_attempt_at
            item.updated_at = now

    async def claim_callback_retry(
        self,
        now: datetime,
        lease_until: datetime,
        max_tries: int,
    ) -> QueueItemRecord | None:
        async with self._lock:
            due = [
                item
                for item in self.items.values()
                if item.status == ItemStatus.COMPLETED
                and item.last_callback_at is None
                and item.next_callback_at is not None
                and item.next_callback_at <= now
                and item.callback_tries < max_tries
            ]
            if not due:
                return None
            item = min(due, key=lambda i: i.next_callback_at)
            item.next_callback_at = lease_until
            return copy.deepcopy(item)

    async def release_stale_locks(self, stale_before: datetime, now: datetime) -> int:
        async with self._lock:
            released = 0
            for item in self.items.values():
                if item.status != ItemStatus.PROCESSING or item.locked_by is None:
                    continue
                last_seen = item.heartbeat_at or item.locked_at
                if last_seen is not None and last_seen < stale_before:
                    item.locked_by = None
                    item.locked_at = None
                    item.updated_at = now
                    released += 1
            return released

    async def reset_processing(self, now: datetime) -> int:
        async with self._lock:
            reset = 0
            for item in self.items.values():
                if item.status != ItemStatus.PROCESSING:
                    continue
                item.status = ItemStatus.PENDING
                item.stage = self.first_stage
                item.progress = 0
                item.eta_seconds = None
                item.locked_by = None
                item.locked_at = None
                item.heartbeat_at = None
                item.stage_started_at = None
                item.updated_at = now
                reset += 1
            return reset

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in ItemStatus}
            for item in self.items.values():
                counts[item.status.value] += 1
            return counts
