"""
Integration tests for the SQL item store and repository.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from prodline.constants import ItemStatus
from prodline.db.connection import get_session_context
from prodline.db.contracts import ItemStore
from prodline.db.repository import (
    QueueItemRepository,
    deserialize_history,
    serialize_history,
)
from prodline.db.store import SqlItemStore
from prodline.errors import InvalidItemError
from prodline.types.item import StageHistoryEntry

CALLBACK_URL = "http://receiver.test/hooks/done"
T0 = datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=UTC)


class TestHistorySerialization:
    """Tests for the stored history format."""

    def test_roundtrip_preserves_open_and_closed_entries(self):
        entries = [
            StageHistoryEntry("queued", T0, T0 + timedelta(seconds=1)),
            StageHistoryEntry("producing", T0 + timedelta(seconds=1)),
        ]

        raw = serialize_history(entries)

        assert raw[1]["finished_at"] is None
        assert deserialize_history(raw) == entries

    def test_empty_history(self):
        assert deserialize_history(None) == []
        assert serialize_history([]) == []


class TestQueueItemRepository:
    """Tests for QueueItemRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> QueueItemRepository:
        """Create a repository instance."""
        return QueueItemRepository(db_session)

    async def test_claim_returns_oldest_pending(
        self,
        repo: QueueItemRepository,
        db_session: AsyncSession,
        sql_store: SqlItemStore,
    ):
        newer = await sql_store.create_item({"n": 2}, CALLBACK_URL, created_at=T0 + timedelta(seconds=1))
        older = await sql_store.create_item({"n": 1}, CALLBACK_URL, created_at=T0)

        claimed = await repo.claim_next_pending("w1", T0 + timedelta(seconds=5), "queued", 60)
        await db_session.commit()

        assert claimed.id == older.id
        assert claimed.status == ItemStatus.PROCESSING
        assert claimed.locked_by == "w1"
        assert claimed.history[0]["stage"] == "queued"
        assert claimed.history[0]["finished_at"] is None

        second = await repo.claim_next_pending("w2", T0 + timedelta(seconds=5), "queued", 60)
        await db_session.commit()

        assert second.id == newer.id
        assert await repo.claim_next_pending("w3", T0 + timedelta(seconds=5), "queued", 60) is None

    async def test_count_by_status(
        self,
        repo: QueueItemRepository,
        db_session: AsyncSession,
        sql_store: SqlItemStore,
    ):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0 + timedelta(seconds=1))
        await repo.claim_next_pending("w1", T0, "queued", 60)
        await db_session.commit()

        assert await repo.count_by_status() == {
            "pending": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
        }


class TestSqlItemStore:
    """Tests for SqlItemStore."""

    def test_satisfies_contract(self, sql_store: SqlItemStore):
        assert isinstance(sql_store, ItemStore)

    async def test_create_and_get(self, sql_store: SqlItemStore):
        created = await sql_store.create_item({"order": "widget", "qty": 3}, CALLBACK_URL, created_at=T0)

        fetched = await sql_store.get_item(created.id)

        assert fetched.id == created.id
        assert fetched.payload == {"order": "widget", "qty": 3}
        assert fetched.callback_url == CALLBACK_URL
        assert fetched.status == ItemStatus.PENDING
        assert fetched.stage == "queued"
        assert fetched.created_at == T0
        assert fetched.history == []
        assert fetched.callback_tries == 0

    async def test_create_requires_callback_url(self, sql_store: SqlItemStore):
        with pytest.raises(InvalidItemError):
            await sql_store.create_item({}, "")

    async def test_get_unknown(self, sql_store: SqlItemStore):
        assert await sql_store.get_item(uuid4()) is None

    async def test_claim_is_exclusive(self, sql_store: SqlItemStore):
        """A claimed item is never handed to a second claimer."""
        item = await sql_store.create_item({}, CALLBACK_URL, created_at=T0)

        first = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        second = await sql_store.claim_next_pending("w2", T0, "queued", 60)

        assert first.id == item.id
        assert first.history[0].started_at == T0
        assert first.locked_at == T0
        assert second is None

    async def test_save_owned_guards_ownership(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        claimed = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        later = T0 + timedelta(seconds=2)

        claimed.close_open_entry(later)
        claimed.history.append(StageHistoryEntry("producing", later))
        claimed.stage = "producing"
        claimed.progress = 3

        assert await sql_store.save_owned(claimed, "w2", later) is False
        assert (await sql_store.get_item(claimed.id)).stage == "queued"

        assert await sql_store.save_owned(claimed, "w1", later) is True
        stored = await sql_store.get_item(claimed.id)
        assert stored.stage == "producing"
        assert stored.progress == 3
        assert stored.heartbeat_at == later
        assert [entry.stage for entry in stored.history] == ["queued", "producing"]
        assert stored.history[0].finished_at == later

    async def test_release_and_adopt(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        claimed = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        claimed.stage = "producing"
        await sql_store.save_owned(claimed, "w1", T0 + timedelta(seconds=1))

        now = T0 + timedelta(seconds=40)
        assert await sql_store.adopt_orphan("w2", now) is None
        assert await sql_store.release_stale_locks(now - timedelta(seconds=30), now) == 1

        adopted = await sql_store.adopt_orphan("w2", now)

        assert adopted.id == claimed.id
        assert adopted.locked_by == "w2"
        assert adopted.stage == "producing"
        assert adopted.status == ItemStatus.PROCESSING
        assert await sql_store.adopt_orphan("w3", now) is None

    async def test_release_spares_fresh_heartbeats(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        claimed = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        await sql_store.save_owned(claimed, "w1", T0 + timedelta(seconds=25))

        now = T0 + timedelta(seconds=40)
        assert await sql_store.release_stale_locks(now - timedelta(seconds=30), now) == 0

    async def test_count_and_list(self, sql_store: SqlItemStore):
        first = await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        second = await sql_store.create_item({}, CALLBACK_URL, created_at=T0 + timedelta(seconds=1))
        third = await sql_store.create_item({}, CALLBACK_URL, created_at=T0 + timedelta(seconds=2))

        assert await sql_store.count_items(ItemStatus.PENDING) == 3
        assert await sql_store.count_items(ItemStatus.PENDING, created_before=third.created_at) == 2
        assert [i.id for i in await sql_store.list_items(newest_first=True)] == [third.id, second.id, first.id]

        await sql_store.claim_next_pending("w1", T0, "queued", 60)

        assert (await sql_store.find_processing()).id == first.id
        assert [i.id for i in await sql_store.list_items(status=ItemStatus.PENDING)] == [second.id, third.id]

    async def test_callback_retry_claim(self, sql_store: SqlItemStore):
        """Due retries are leased so a second claimer sees nothing."""
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        item = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        done_at = T0 + timedelta(seconds=60)
        item.status = ItemStatus.COMPLETED
        item.completed_at = done_at
        item.locked_by = None
        item.locked_at = None
        item.next_callback_at = done_at + timedelta(seconds=6)
        assert await sql_store.save_owned(item, "w1", done_at) is True

        assert await sql_store.claim_callback_retry(done_at, done_at + timedelta(seconds=6), 3) is None

        due_at = done_at + timedelta(seconds=6)
        lease = due_at + timedelta(seconds=6)
        claimed = await sql_store.claim_callback_retry(due_at, lease, 3)

        assert claimed.id == item.id
        assert claimed.next_callback_at == lease
        assert await sql_store.claim_callback_retry(due_at, lease, 3) is None

    async def test_callback_bookkeeping(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        item = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        item.status = ItemStatus.COMPLETED
        item.locked_by = None
        await sql_store.save_owned(item, "w1", T0)

        await sql_store.record_callback_failure(item.id, 1, T0 + timedelta(seconds=5), T0)
        failed = await sql_store.get_item(item.id)
        assert failed.callback_tries == 1
        assert failed.next_callback_at == T0 + timedelta(seconds=5)

        await sql_store.record_callback_success(item.id, T0 + timedelta(seconds=5))
        await sql_store.record_callback_success(item.id, T0 + timedelta(seconds=9))
        delivered = await sql_store.get_item(item.id)
        assert delivered.last_callback_at == T0 + timedelta(seconds=5)
        assert delivered.next_callback_at is None

    async def test_exhausted_items_are_not_retried(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        item = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        item.status = ItemStatus.COMPLETED
        item.locked_by = None
        await sql_store.save_owned(item, "w1", T0)
        await sql_store.record_callback_failure(item.id, 3, T0, T0)

        assert await sql_store.claim_callback_retry(T0 + timedelta(hours=1), T0 + timedelta(hours=2), 3) is None

    async def test_reset_processing(self, sql_store: SqlItemStore):
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0)
        await sql_store.create_item({}, CALLBACK_URL, created_at=T0 + timedelta(seconds=1))
        claimed = await sql_store.claim_next_pending("w1", T0, "queued", 60)
        claimed.stage = "producing"
        claimed.progress = 40
        await sql_store.save_owned(claimed, "w1", T0)

        assert await sql_store.reset_processing(T0 + timedelta(seconds=2)) == 1

        reset = await sql_store.get_item(claimed.id)
        assert reset.status == ItemStatus.PENDING
        assert reset.stage == "queued"
        assert reset.progress == 0
        assert reset.locked_by is None
        assert reset.stage_started_at is None
        assert await sql_store.count_by_status() == {
            "pending": 2,
            "processing": 0,
            "completed": 0,
            "failed": 0,
        }


class TestSessionContext:
    """Tests for get_session_context."""

    async def test_commits_on_success(self, session_factory, sql_store: SqlItemStore):
        item = await sql_store.create_item({}, CALLBACK_URL, created_at=T0)

        async with get_session_context(session_factory) as session:
            await QueueItemRepository(session).claim_next_pending("w1", T0, "queued", 60)

        assert (await sql_store.get_item(item.id)).status == ItemStatus.PROCESSING

    async def test_rolls_back_on_error(self, session_factory, sql_store: SqlItemStore):
        item = await sql_store.create_item({}, CALLBACK_URL, created_at=T0)

        with pytest.raises(RuntimeError):
            async with get_session_context(session_factory) as session:
                await QueueItemRepository(session).claim_next_pending("w1", T0, "queued", 60)
                raise RuntimeError("abort")

        stored = await sql_store.get_item(item.id)
        assert stored.status == ItemStatus.PENDING
        assert stored.locked_by is None
