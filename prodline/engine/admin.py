"""
Administrative operations on the production line.

These run out of band: the engine tolerates them happening between any two
ticks and drops an item it no longer owns.
"""

import logging
from datetime import UTC, datetime

from prodline.constants import ItemStatus
from prodline.db.contracts import ItemStore
from prodline.types.engine import QueueOverview

logger = logging.getLogger(__name__)


async def reset_processing(store: ItemStore, now: datetime | None = None) -> int:
    """
    Return every PROCESSING item to PENDING and clear its lock fields.

    Args:
        store: The item store.
        now: Optional reset time.

    Returns:
        Number of reset items.
    """
    count = await store.reset_processing(now or datetime.now(UTC))
    logger.info("Reset processing items", extra={"reset_count": count})
    return count


async def get_queue_overview(store: ItemStore, limit: int = 50) -> QueueOverview:
    """
    Get counts per status and the items currently in flight.

    Args:
        store: The item store.
        limit: Maximum number of in-flight items to include.

    Returns:
        QueueOverview for the whole store.
    """
    counts = await store.count_by_status()
    processing = await store.list_items(status=ItemStatus.PROCESSING, limit=limit)
    return QueueOverview(counts=counts, processing_items=processing)
