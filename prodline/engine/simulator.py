"""
Stage engine for the production line.

One engine instance owns a single logical worker slot. Every tick it either
claims the next item (adopting orphans first) or drives its active item one
step through the stage pipeline, and it retries due completion callbacks.
Correctness across instances rests entirely on the store's conditional
updates.
"""

import asyncio
import logging
import os
import random
from datetime import datetime
from uuid import UUID, uuid4

from prodline.config import Settings, get_settings
from prodline.constants import (
    ItemStatus,
    SPAN_ADVANCE_STAGE,
    SPAN_CLAIM_ITEM,
    SPAN_ENGINE_TICK,
)
from prodline.db.contracts import ItemStore
from prodline.engine.notifier import CompletionNotifier, HttpNotifier, Notifier
from prodline.engine.pipeline import Pipeline
from prodline.engine.timing import (
    Clock,
    SystemClock,
    compute_duration,
    deadline_after,
    round_half_up,
)
from prodline.observability.metrics import MetricsCollector, get_metrics
from prodline.observability.tracing import get_tracer
from prodline.types.engine import EngineCursor, EngineStatus, PositionResult
from prodline.types.item import QueueItemRecord, StageHistoryEntry

logger = logging.getLogger(__name__)


class StageEngine:
    """
    Single-slot stage engine.

    Features:
    - Orphan adoption before FIFO claim
    - Jittered per-stage deadlines
    - Live progress/ETA projection capped below 100 until completion
    - Owner-guarded writes; a rejected write drops the active item
    - Bounded, idempotent completion callbacks
    - Errors contained at the tick boundary
    """

    def __init__(
        self,
        store: ItemStore,
        notifier: Notifier | None = None,
        pipeline: Pipeline | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Durable item store shared by all engine instances.
            notifier: Callback transport. Defaults to HTTP.
            pipeline: Stage pipeline. Defaults to the configured one.
            clock: Time source. Defaults to wall time.
            settings: Settings override.
            worker_id: Unique instance identity. Defaults to hostname, PID and a random suffix.
            metrics: Metrics collector override.
            rng: Random source for stage jitter.
        """
        settings = settings or get_settings()

        self.worker_id = (
            worker_id
            or settings.engine_worker_id
            or f"sim-{os.uname().nodename}-{os.getpid()}-{uuid4().hex[:6]}"
        )
        self.pipeline = pipeline or Pipeline.from_settings(settings)
        self.tick_interval = settings.engine_tick_interval_seconds
        self.jitter_ratio = settings.engine_jitter_ratio
        self.callback_batch_size = settings.engine_callback_batch_size

        self._store = store
        self._clock = clock or SystemClock()
        self._rng = rng
        self._metrics = metrics or get_metrics()
        self._callbacks = CompletionNotifier(
            store=store,
            notifier=notifier or HttpNotifier(),
            timeout_seconds=settings.engine_callback_timeout_seconds,
            max_tries=settings.engine_max_callback_tries,
            backoff_seconds=settings.engine_callback_backoff_seconds,
            metrics=self._metrics,
        )

        self._cursor = EngineCursor()
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def cursor(self) -> EngineCursor:
        return self._cursor

    @property
    def callbacks(self) -> CompletionNotifier:
        return self._callbacks

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin ticking in a background task. No-op if already running."""
        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event),
            name=f"stage-engine-{self.worker_id}",
        )
        logger.info(
            "Engine started",
            extra={"worker_id": self.worker_id, "tick_interval": self.tick_interval}
        )

    async def stop(self) -> None:
        """
        Stop ticking. The tick in progress runs to completion.
        Safe to call repeatedly.
        """
        task, self._task = self._task, None
        if task is None:
            return

        logger.info("Engine stopping", extra={"worker_id": self.worker_id})
        if self._stop_event is not None:
            self._stop_event.set()
        await task
        logger.info("Engine stopped", extra={"worker_id": self.worker_id})

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_interval)
            except TimeoutError:
                pass

    async def tick(self) -> EngineCursor:
        """
        Run one tick.

        Store and network errors are logged and leave the cursor unchanged so
        the next tick retries from the same state.

        Returns:
            The cursor after the tick.
        """
        with get_tracer().start_as_current_span(SPAN_ENGINE_TICK) as span:
            span.set_attribute("worker_id", self.worker_id)
            try:
                self._cursor = await self.step(self._cursor)
                await self._callbacks.retry_due(self._clock.now(), self.callback_batch_size)
            except Exception as e:
                logger.exception(
                    f"Error in engine tick: {e}",
                    extra={"worker_id": self.worker_id}
                )
                self._metrics.record_tick_error(self.worker_id)
        return self._cursor

    async def step(self, cursor: EngineCursor) -> EngineCursor:
        """
        Advance the state machine by one step.

        Args:
            cursor: The cursor before this step.

        Returns:
            The cursor after this step.
        """
        now = self._clock.now()

        if cursor.is_idle:
            return await self._claim(now)

        item = await self._store.get_item(cursor.active_item_id)
        if item is None or not item.is_owned_by(self.worker_id):
            logger.warning(
                "Lost ownership of active item",
                extra={"item_id": str(cursor.active_item_id), "worker_id": self.worker_id}
            )
            return EngineCursor()

        if cursor.stage_deadline is None:
            return await self._resume_stage(item, now)

        if now >= cursor.stage_deadline:
            return await self._advance(item, now)

        self._apply_progress(item, now)
        if not await self._save(item, now):
            return EngineCursor()
        return cursor

    async def _claim(self, now: datetime) -> EngineCursor:
        with get_tracer().start_as_current_span(SPAN_CLAIM_ITEM):
            orphan = await self._store.adopt_orphan(self.worker_id, now)
            if orphan is not None:
                self._metrics.record_claim(self.worker_id, orphan=True)
                logger.info(
                    "Adopted orphaned item",
                    extra={"item_id": str(orphan.id), "stage": orphan.stage, "worker_id": self.worker_id}
                )
                # Deadline is recomputed on the next tick
                return EngineCursor(active_item_id=orphan.id)

            item = await self._store.claim_next_pending(
                worker_id=self.worker_id,
                now=now,
                first_stage=self.pipeline.first.name,
                eta_seconds=self.pipeline.total_seconds,
            )
            if item is None:
                return EngineCursor()

            self._metrics.record_claim(self.worker_id)
            logger.info(
                "Claimed item",
                extra={"item_id": str(item.id), "worker_id": self.worker_id}
            )
            return EngineCursor(
                active_item_id=item.id,
                stage_deadline=self._deadline_for(item.stage, now),
            )

    async def _resume_stage(self, item: QueueItemRecord, now: datetime) -> EngineCursor:
        """(Re)start the item's current stage after adoption."""
        deadline = self._start_stage(item, item.stage, now)
        self._apply_progress(item, now)
        if not await self._save(item, now):
            return EngineCursor()

        logger.info(
            "Resumed stage",
            extra={"item_id": str(item.id), "stage": item.stage}
        )
        return EngineCursor(active_item_id=item.id, stage_deadline=deadline)

    async def _advance(self, item: QueueItemRecord, now: datetime) -> EngineCursor:
        with get_tracer().start_as_current_span(SPAN_ADVANCE_STAGE) as span:
            span.set_attribute("item_id", str(item.id))
            span.set_attribute("stage", item.stage)

            closed = item.close_open_entry(now)
            next_stage = self.pipeline.next_stage(item.stage)
            if closed is not None:
                self._metrics.record_stage_transition(
                    from_stage=closed.stage,
                    to_stage=next_stage.name,
                    duration_seconds=(now - closed.started_at).total_seconds(),
                )

            if self.pipeline.is_terminal(next_stage.name):
                return await self._complete(item, now)

            if not await self._save(item, now):
                return EngineCursor()

            previous = item.stage
            deadline = self._start_stage(item, next_stage.name, now)
            self._apply_progress(item, now)
            if not await self._save(item, now):
                return EngineCursor()

            logger.info(
                "Stage advanced",
                extra={"item_id": str(item.id), "from_stage": previous, "to_stage": item.stage}
            )
            return EngineCursor(active_item_id=item.id, stage_deadline=deadline)

    async def _complete(self, item: QueueItemRecord, now: datetime) -> EngineCursor:
        terminal = self.pipeline.terminal.name
        if not item.history or item.history[-1].stage != terminal:
            item.history.append(StageHistoryEntry(stage=terminal, started_at=now, finished_at=now))

        item.stage = terminal
        item.stage_started_at = now
        item.status = ItemStatus.COMPLETED
        item.progress = 100
        item.eta_seconds = 0
        item.completed_at = now
        item.locked_by = None
        item.locked_at = None
        # Held as a retry gate until the first attempt settles
        item.next_callback_at = deadline_after(
            now,
            int((self._callbacks.timeout_seconds + self._callbacks.backoff_seconds) * 1000),
        )

        if not await self._save(item, now):
            return EngineCursor()

        self._metrics.record_item_completed(self.worker_id)
        logger.info(
            "Item completed",
            extra={"item_id": str(item.id), "worker_id": self.worker_id}
        )

        try:
            await self._callbacks.notify(item, now)
        except Exception:
            logger.exception(
                "Completion callback raised, left for retry",
                extra={"item_id": str(item.id)}
            )

        return EngineCursor()

    def _start_stage(self, item: QueueItemRecord, stage: str, now: datetime) -> datetime:
        item.stage = stage
        item.stage_started_at = now
        if item.open_entry(stage) is None:
            item.history.append(StageHistoryEntry(stage=stage, started_at=now))
        return self._deadline_for(stage, now)

    def _deadline_for(self, stage: str, now: datetime) -> datetime:
        duration_ms = compute_duration(
            self.pipeline.get(stage).base_duration_ms,
            self.jitter_ratio,
            self._rng,
        )
        return deadline_after(now, duration_ms)

    def _apply_progress(self, item: QueueItemRecord, now: datetime) -> None:
        """Recompute progress and ETA from the item's history."""
        total_ms = self.pipeline.total_ms
        elapsed_ms = sum(entry.elapsed_ms(item.stage, now) for entry in item.history)

        if total_ms <= 0:
            progress = 99
        else:
            progress = min(99, elapsed_ms * 100 // total_ms)

        item.progress = min(99, max(item.progress, progress))
        item.eta_seconds = round_half_up(max(0, total_ms - elapsed_ms) / 1000)

    async def _save(self, item: QueueItemRecord, now: datetime) -> bool:
        saved = await self._store.save_owned(item, self.worker_id, now)
        if not saved:
            logger.warning(
                "Write rejected, ownership lost",
                extra={"item_id": str(item.id), "worker_id": self.worker_id}
            )
        return saved

    async def get_status(self) -> EngineStatus:
        """
        Get an aggregate view of the line.

        Returns:
            The engine-held item (or any PROCESSING item), queue size,
            nominal item duration and current ETA.
        """
        processing = None
        if self._cursor.active_item_id is not None:
            processing = await self._store.get_item(self._cursor.active_item_id)
        if processing is None:
            processing = await self._store.find_processing()

        queue_size = await self._store.count_items(ItemStatus.PENDING)
        self._metrics.update_queue_depth(queue_size)

        return EngineStatus(
            processing=processing,
            queue_size=queue_size,
            average_item_seconds=self.pipeline.total_seconds,
            current_item_eta=processing.eta_seconds if processing else None,
        )

    async def get_position(self, item_id: UUID) -> PositionResult:
        """
        Get the queue position of an item.

        Args:
            item_id: The item UUID.

        Returns:
            0 for processing or completed items, otherwise one more than the
            number of pending items created earlier. A not-found result for
            unknown ids.
        """
        item = await self._store.get_item(item_id)
        if item is None:
            return PositionResult.not_found()

        if item.status in (ItemStatus.COMPLETED, ItemStatus.PROCESSING):
            return PositionResult(position=0, status=item.status)

        ahead = await self._store.count_items(ItemStatus.PENDING, created_before=item.created_at)
        return PositionResult(position=ahead + 1, status=item.status)
