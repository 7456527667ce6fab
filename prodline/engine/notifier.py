"""
Completion notifications.

Delivery is at-least-once: a completed item is POSTed to its callback URL,
failures are retried a bounded number of times with a fixed backoff, and a
stamped `last_callback_at` makes further attempts no-ops.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx

from prodline.constants import CallbackOutcome, SPAN_DELIVER_CALLBACK
from prodline.db.contracts import ItemStore
from prodline.observability.metrics import MetricsCollector, get_metrics
from prodline.observability.tracing import get_tracer
from prodline.types.callbacks import CallbackPayload
from prodline.types.item import QueueItemRecord

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Outbound transport for completion callbacks."""

    async def deliver(self, url: str, payload: dict[str, Any], timeout_seconds: float) -> bool: ...


class HttpNotifier:
    """
    POSTs callback payloads as JSON over HTTP.

    Any 2xx response is a success. Timeouts, transport errors and other
    status codes are failures.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize the notifier.

        Args:
            transport: Optional httpx transport, e.g. a MockTransport in tests.
        """
        self._transport = transport

    async def deliver(self, url: str, payload: dict[str, Any], timeout_seconds: float) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(url, json=payload, timeout=timeout_seconds)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(
                "Callback request failed",
                extra={"url": url, "error": str(e)}
            )
            return False

        if not response.is_success:
            logger.warning(
                "Callback rejected",
                extra={"url": url, "status_code": response.status_code}
            )
        return response.is_success


class CompletionNotifier:
    """
    Idempotent, bounded-retry delivery of completion callbacks.
    """

    def __init__(
        self,
        store: ItemStore,
        notifier: Notifier,
        timeout_seconds: float,
        max_tries: int,
        backoff_seconds: float,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.max_tries = max_tries
        self.backoff_seconds = backoff_seconds
        self._metrics = metrics or get_metrics()

    async def notify(self, item: QueueItemRecord, now: datetime) -> CallbackOutcome:
        """
        Attempt delivery of one completed item's callback.

        Args:
            item: The completed item. Its callback fields are updated in place.
            now: Current time.

        Returns:
            The outcome of this attempt.
        """
        if item.last_callback_at is not None or item.callback_tries >= self.max_tries:
            logger.debug(
                "Callback skipped",
                extra={
                    "item_id": str(item.id),
                    "delivered": item.last_callback_at is not None,
                    "tries": item.callback_tries,
                }
            )
            return CallbackOutcome.SKIPPED

        payload = CallbackPayload.from_item(item, now).to_json()

        with get_tracer().start_as_current_span(SPAN_DELIVER_CALLBACK) as span:
            span.set_attribute("item_id", str(item.id))
            span.set_attribute("attempt", item.callback_tries + 1)
            try:
                delivered = await self._notifier.deliver(item.callback_url, payload, self.timeout_seconds)
            except Exception:
                logger.exception(
                    "Callback notifier raised",
                    extra={"item_id": str(item.id), "url": item.callback_url}
                )
                delivered = False

        if delivered:
            item.last_callback_at = now
            item.next_callback_at = None
            await self._store.record_callback_success(item.id, now)
            outcome = CallbackOutcome.DELIVERED
            logger.info(
                "Callback delivered",
                extra={"item_id": str(item.id), "attempt": item.callback_tries + 1}
            )
        else:
            item.callback_tries += 1
            if item.callback_tries < self.max_tries:
                item.next_callback_at = now + timedelta(seconds=self.backoff_seconds)
                outcome = CallbackOutcome.RETRY_SCHEDULED
            else:
                item.next_callback_at = None
                outcome = CallbackOutcome.GAVE_UP
                logger.warning(
                    "Giving up on callback",
                    extra={"item_id": str(item.id), "tries": item.callback_tries}
                )
            await self._store.record_callback_failure(
                item.id, item.callback_tries, item.next_callback_at, now
            )

        self._metrics.record_callback(outcome.value)
        return outcome

    async def retry_due(self, now: datetime, limit: int) -> int:
        """
        Retry callbacks whose backoff has elapsed.

        Each item is claimed from the store before the attempt so only one
        engine instance retries it.

        Args:
            now: Current time.
            limit: Maximum retries in this call.

        Returns:
            Number of attempts made.
        """
        # The gate is held for one timeout plus backoff while the attempt runs
        lease_until = now + timedelta(seconds=self.timeout_seconds + self.backoff_seconds)
        attempts = 0
        while attempts < limit:
            item = await self._store.claim_callback_retry(now, lease_until, self.max_tries)
            if item is None:
                break
            await self.notify(item, now)
            attempts += 1
        return attempts
