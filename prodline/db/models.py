"""
SQLAlchemy database models.
Defines the queue item table.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from prodline.constants import ItemStatus, Stage

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime that always comes back in UTC.

    Backends without native timezone support hand back naive values; those
    are stored in UTC and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueItem(Base):
    """
    Queue item model representing one unit of production.

    This is the authoritative source of truth for item state.
    All lifecycle transitions are conditional updates against this table.

    Key constraints:
    - created_at defines FIFO order, there is no priority
    - locked_by/locked_at identify the engine instance driving the item
    - history is append-only, one entry per stage entered
    """

    __tablename__ = "queue_items"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Caller supplied data
    payload: Mapped[Any] = mapped_column(
        JSONType,
        nullable=True,
    )
    callback_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Lifecycle
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus, name="item_status", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ItemStatus.PENDING,
        index=True,
    )
    stage: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=Stage.QUEUED.value,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    eta_seconds: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # Lock management
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # Stage tracking
    stage_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    # Callback bookkeeping
    last_callback_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    callback_tries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    next_callback_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    __table_args__ = (
        # Index for FIFO claim polling
        Index("ix_queue_items_claim", "status", "created_at"),
        # Index for callback retry polling
        Index("ix_queue_items_callback_retry", "status", "next_callback_at"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueItem(id={self.id}, status={self.status}, "
            f"stage={self.stage}, progress={self.progress})"
        )
