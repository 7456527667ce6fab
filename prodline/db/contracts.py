"""
Item store contract consumed by the stage engine.

Any persistence backend that can perform atomic conditional updates
satisfies it.
"""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from prodline.constants import ItemStatus
from prodline.types.item import QueueItemRecord


@runtime_checkable
class ItemStore(Protocol):
    """
    Durable collection of queue items.

    Claim semantics must remain compatible with row claims using
    SELECT ... FOR UPDATE SKIP LOCKED: of several concurrent callers, exactly
    one receives a given item.
    """

    async def create_item(
        self,
        payload: Any,
        callback_url: str,
        created_at: datetime | None = None,
    ) -> QueueItemRecord: ...

    async def get_item(self, item_id: UUID) -> QueueItemRecord | None: ...

    async def adopt_orphan(self, worker_id: str, now: datetime) -> QueueItemRecord | None: ...

    async def claim_next_pending(
        self,
        worker_id: str,
        now: datetime,
        first_stage: str,
        eta_seconds: int,
    ) -> QueueItemRecord | None: ...

    async def save_owned(self, item: QueueItemRecord, worker_id: str, now: datetime) -> bool: ...

    async def count_items(
        self,
        status: ItemStatus,
        created_before: datetime | None = None,
    ) -> int: ...

    async def find_processing(self) -> QueueItemRecord | None: ...

    async def list_items(
        self,
        status: ItemStatus | None = None,
        limit: int = 50,
        newest_first: bool = False,
    ) -> list[QueueItemRecord]: ...

    async def record_callback_success(self, item_id: UUID, delivered_at: datetime) -> None: ...

    async def record_callback_failure(
        self,
        item_id: UUID,
        tries: int,
        next_attempt_at: datetime | None,
        now: datetime,
    ) -> None: ...

    async def claim_callback_retry(
        self,
        now: datetime,
        lease_until: datetime,
        max_tries: int,
    ) -> QueueItemRecord | None: ...

    async def release_stale_locks(self, stale_before: datetime, now: datetime) -> int: ...

    async def reset_processing(self, now: datetime) -> int: ...

    async def count_by_status(self) -> dict[str, int]: ...
