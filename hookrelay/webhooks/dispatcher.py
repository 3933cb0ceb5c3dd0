"""Webhook dispatcher.

Fans events out to subscribed webhooks, persists one delivery record per
subscriber and feeds a bounded queue consumed by a pool of delivery
workers. A retry scanner and a cleanup sweep run alongside the workers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx

from hookrelay.exceptions import NotFoundError, StoreError
from hookrelay.webhooks.config import DispatcherConfig
from hookrelay.webhooks.debouncer import Debouncer
from hookrelay.webhooks.delivery import (
    DeliveryExecutor,
    DeliveryResult,
    QueuedDelivery,
    calculate_backoff,
)
from hookrelay.webhooks.event import EVENT_TEST, Event, TestEventData
from hookrelay.webhooks.models import Webhook, WebhookDelivery
from hookrelay.webhooks.store import WebhookStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class DispatcherState(StrEnum):
    """Dispatcher lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Dispatcher:
    """Asynchronous webhook dispatcher with retries and dead-lettering."""

    def __init__(
        self,
        store: WebhookStore,
        config: DispatcherConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: Persistence port for webhooks and deliveries
            config: Dispatcher settings (defaults when omitted)
            http_client: Optional shared client for outbound requests
            clock: Returns the current UTC time; injectable for tests
        """
        self._store = store
        self._config = config or DispatcherConfig()
        self._http_client = http_client
        self._clock = clock or utc_now

        self._state = DispatcherState.STOPPED
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[QueuedDelivery] = asyncio.Queue(maxsize=self._config.queue_size)
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._executor: DeliveryExecutor | None = None
        # Delivery IDs sitting in the queue or being sent by a worker
        self._in_flight: set[int] = set()

        self._debouncer: Debouncer | None = None
        if self._config.enable_debounce:
            self._debouncer = Debouncer(self.dispatch, self._config.debounce)

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    @property
    def store(self) -> WebhookStore:
        return self._store

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is DispatcherState.RUNNING

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # Lifecycle

    async def start(self) -> None:
        """Start workers, the retry scanner and the cleanup sweep."""
        async with self._lock:
            if self._state is not DispatcherState.STOPPED:
                logger.debug("Dispatcher already %s, start ignored", self._state)
                return

            self._state = DispatcherState.STARTING
            self._stop_event = asyncio.Event()
            self._executor = DeliveryExecutor(self._config, self._http_client)

            for worker_id in range(self._config.workers):
                self._tasks.append(
                    asyncio.create_task(self._worker(worker_id), name=f"webhook-worker-{worker_id}")
                )
            self._tasks.append(asyncio.create_task(self._retry_loop(), name="webhook-retry"))
            self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="webhook-cleanup"))

            self._state = DispatcherState.RUNNING
            logger.info(
                "Webhook dispatcher started (workers=%d, queue_size=%d, debounce=%s)",
                self._config.workers,
                self._config.queue_size,
                self._debouncer is not None,
            )

    async def stop(self) -> None:
        """Flush the debouncer, signal every loop and wait for them to exit."""
        async with self._lock:
            if self._state is not DispatcherState.RUNNING:
                logger.debug("Dispatcher %s, stop ignored", self._state)
                return

            # Still RUNNING here, so flushed events are persisted
            if self._debouncer is not None:
                await self._debouncer.stop()

            self._state = DispatcherState.STOPPING
            assert self._stop_event is not None
            self._stop_event.set()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

            if self._executor is not None:
                await self._executor.aclose()
                self._executor = None

            self._state = DispatcherState.STOPPED
            logger.info(
                "Webhook dispatcher stopped (%d queued item(s) left for the retry scanner)",
                self._queue.qsize(),
            )

    # Producer API

    async def dispatch(self, event: Event) -> list[int]:
        """
        Create deliveries for every active webhook subscribed to the event.

        Returns:
            IDs of the delivery records created

        Raises:
            EventSerializationError: If the event cannot be JSON-encoded
            StoreError: If subscribers cannot be looked up
        """
        if not self.is_running:
            logger.warning(
                "Dispatcher not running, dropping event (event_type=%s)",
                event.event_type,
            )
            return []

        webhooks = await self._store.list_webhooks_for_event(event.event_type)
        # The store prefilter is approximate
        matching = [w for w in webhooks if w.is_active and w.subscribes_to(event.event_type)]
        if not matching:
            logger.debug("No webhooks subscribe to event_type=%s", event.event_type)
            return []

        payload = event.to_json()
        payload_text = payload.decode("utf-8")
        now = self._clock()

        delivery_ids: list[int] = []
        for webhook in matching:
            try:
                delivery = await self._store.create_delivery(
                    webhook_id=webhook.id,
                    event_type=event.event_type,
                    payload=payload_text,
                    now=now,
                )
            except StoreError as e:
                logger.error(
                    "Failed to create delivery, subscriber misses event "
                    "(webhook_id=%d event_type=%s): %s",
                    webhook.id,
                    event.event_type,
                    e,
                )
                continue

            delivery_ids.append(delivery.id)
            logger.info(
                "Webhook delivery created (delivery_id=%d webhook_id=%d event_type=%s)",
                delivery.id,
                webhook.id,
                event.event_type,
            )
            self._enqueue(self._queued(delivery, webhook, payload))

        return delivery_ids

    async def dispatch_event(self, event_type: str, data: Any) -> list[int]:
        """
        Dispatch an event through the debouncer when it is enabled.

        Returns:
            Created delivery IDs, or an empty list when the event was buffered
        """
        event = Event(event_type=event_type, data=data, timestamp=self._clock())
        if self._debouncer is None:
            return await self.dispatch(event)

        if not self.is_running:
            logger.warning(
                "Dispatcher not running, dropping event (event_type=%s)",
                event_type,
            )
            return []

        self._debouncer.dispatch(event)
        return []

    async def dispatch_immediate(self, event_type: str, data: Any) -> list[int]:
        """Dispatch an event right away, bypassing the debouncer."""
        event = Event(event_type=event_type, data=data, timestamp=self._clock())
        return await self.dispatch(event)

    def debounce_stats(self) -> tuple[int, bool]:
        """Return ``(pending buffered events, debounce enabled)``."""
        if self._debouncer is None:
            return 0, False
        return self._debouncer.pending_count(), True

    # Operator actions

    async def send_test(
        self,
        webhook_id: int,
        triggered_by: dict[str, Any] | None = None,
    ) -> int | None:
        """
        Send a test event to one webhook regardless of its subscriptions.

        Returns:
            The delivery ID, or None if the webhook is inactive

        Raises:
            NotFoundError: If the webhook does not exist
        """
        webhook = await self._store.get_webhook(webhook_id)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)
        if not webhook.is_active:
            logger.warning("Test delivery skipped, webhook inactive (webhook_id=%d)", webhook_id)
            return None

        now = self._clock()
        event = Event(
            event_type=EVENT_TEST,
            data=TestEventData(webhook_id=webhook.id, triggered_by=triggered_by, timestamp=now),
            timestamp=now,
        )
        payload = event.to_json()
        delivery = await self._store.create_delivery(
            webhook_id=webhook.id,
            event_type=EVENT_TEST,
            payload=payload.decode("utf-8"),
            now=now,
        )
        logger.info(
            "Test delivery created (delivery_id=%d webhook_id=%d)",
            delivery.id,
            webhook.id,
        )
        if self.is_running:
            self._enqueue(self._queued(delivery, webhook, payload))
        return delivery.id

    async def redeliver(self, delivery_id: int) -> None:
        """
        Reset a delivery so the retry scanner sends it again.

        Raises:
            NotFoundError: If the delivery does not exist
        """
        if not await self._store.reset_delivery_for_retry(delivery_id, self._clock()):
            raise NotFoundError("delivery", delivery_id)
        logger.info("Delivery reset for redelivery (delivery_id=%d)", delivery_id)

    # Delivery

    @staticmethod
    def _queued(delivery: WebhookDelivery, webhook: Webhook, payload: bytes) -> QueuedDelivery:
        return QueuedDelivery(
            delivery_id=delivery.id,
            webhook_id=webhook.id,
            event_type=delivery.event_type,
            payload=payload,
            url=webhook.url,
            secret=webhook.secret,
            headers=webhook.get_headers(),
        )

    def _enqueue(self, item: QueuedDelivery) -> bool:
        if item.delivery_id in self._in_flight:
            logger.debug("Delivery already queued or in flight (delivery_id=%d)", item.delivery_id)
            return True
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(
                "Webhook queue full, leaving delivery to the retry scanner (delivery_id=%d)",
                item.delivery_id,
            )
            return False
        self._in_flight.add(item.delivery_id)
        return True

    async def process_delivery(self, item: QueuedDelivery) -> DeliveryResult | None:
        """Attempt one queued delivery and persist its outcome.

        Returns None when the delivery no longer needs processing: it is
        gone, terminal, or its next attempt is not due yet.
        """
        try:
            return await self._process_delivery(item)
        finally:
            self._in_flight.discard(item.delivery_id)

    async def _process_delivery(self, item: QueuedDelivery) -> DeliveryResult | None:
        if self._executor is None:
            raise RuntimeError("Dispatcher is not started")

        current = await self._store.get_delivery(item.delivery_id)
        if current is None:
            logger.warning("Delivery disappeared before sending (delivery_id=%d)", item.delivery_id)
            return None
        if current.is_terminal:
            logger.debug(
                "Delivery already %s, skipping (delivery_id=%d)",
                current.status,
                item.delivery_id,
            )
            return None
        if current.next_retry_at is not None and current.next_retry_at > self._clock():
            logger.debug(
                "Delivery not due until %s, skipping (delivery_id=%d)",
                current.next_retry_at.isoformat(),
                item.delivery_id,
            )
            return None

        result = await self._executor.deliver(item)
        await self._record_outcome(current, item, result)
        return result

    async def _record_outcome(
        self,
        current: WebhookDelivery,
        item: QueuedDelivery,
        result: DeliveryResult,
    ) -> None:
        now = self._clock()
        attempt = current.attempt_count + 1

        if result.success:
            updated = await self._store.mark_delivered(
                item.delivery_id,
                response_code=result.status_code or 0,
                response_body=result.response_body,
                now=now,
            )
            if updated:
                logger.info(
                    "Webhook delivered (delivery_id=%d webhook_id=%d event_type=%s "
                    "attempt=%d status_code=%s)",
                    item.delivery_id,
                    item.webhook_id,
                    item.event_type,
                    attempt,
                    result.status_code,
                )
        elif not result.should_retry or attempt >= self._config.max_attempts:
            updated = await self._store.mark_dead(
                item.delivery_id,
                error_message=result.error,
                now=now,
                response_code=result.status_code,
                response_body=result.response_body or None,
            )
            if updated:
                logger.warning(
                    "Webhook delivery dead (delivery_id=%d webhook_id=%d event_type=%s "
                    "attempt=%d status_code=%s error=%s)",
                    item.delivery_id,
                    item.webhook_id,
                    item.event_type,
                    attempt,
                    result.status_code,
                    result.error,
                )
        else:
            backoff = calculate_backoff(
                attempt,
                timedelta(seconds=self._config.initial_backoff_seconds),
                timedelta(seconds=self._config.max_backoff_seconds),
            )
            next_retry_at = now + backoff
            updated = await self._store.schedule_retry(
                item.delivery_id,
                response_code=result.status_code,
                response_body=result.response_body or None,
                error_message=result.error,
                next_retry_at=next_retry_at,
                now=now,
            )
            if updated:
                logger.info(
                    "Webhook delivery failed, retry scheduled (delivery_id=%d webhook_id=%d "
                    "event_type=%s attempt=%d status_code=%s error=%s next_retry_at=%s)",
                    item.delivery_id,
                    item.webhook_id,
                    item.event_type,
                    attempt,
                    result.status_code,
                    result.error,
                    next_retry_at.isoformat(),
                )

        if not updated:
            logger.debug(
                "Delivery no longer pending, outcome discarded (delivery_id=%d)",
                item.delivery_id,
            )

    # Background loops

    async def process_retries(self) -> int:
        """Enqueue pending deliveries that are due. Returns the number enqueued."""
        now = self._clock()
        deliveries = await self._store.get_pending_deliveries(now, self._config.retry_batch_size)
        if not deliveries:
            return 0

        webhooks: dict[int, Webhook | None] = {}
        enqueued = 0
        for delivery in deliveries:
            if delivery.id in self._in_flight:
                continue
            if delivery.webhook_id not in webhooks:
                webhooks[delivery.webhook_id] = await self._store.get_webhook(delivery.webhook_id)
            webhook = webhooks[delivery.webhook_id]

            if webhook is None or not webhook.is_active:
                reason = "webhook not found" if webhook is None else "webhook disabled"
                await self._store.mark_dead(delivery.id, error_message=reason, now=now)
                logger.warning(
                    "Webhook delivery dead (delivery_id=%d webhook_id=%d event_type=%s error=%s)",
                    delivery.id,
                    delivery.webhook_id,
                    delivery.event_type,
                    reason,
                )
                continue

            item = self._queued(delivery, webhook, delivery.payload.encode("utf-8"))
            if not self._enqueue(item):
                break
            enqueued += 1

        if enqueued:
            logger.debug("Retry scan enqueued %d delivery(ies)", enqueued)
        return enqueued

    async def cleanup_old_deliveries(self) -> int:
        """Delete terminal deliveries older than the retention window."""
        cutoff = self._clock() - timedelta(days=self._config.retention_days)
        deleted = await self._store.delete_old_deliveries(cutoff)
        if deleted:
            logger.info(
                "Cleaned up %d old webhook deliveries (cutoff=%s)",
                deleted,
                cutoff.isoformat(),
            )
        return deleted

    async def _wait_stopped(self, timeout: float) -> bool:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _worker(self, worker_id: int) -> None:
        assert self._stop_event is not None
        logger.debug("Webhook worker %d started", worker_id)
        while not self._stop_event.is_set():
            try:
                item = await asyncio.wait_for(
                    self._queue.get(), timeout=self._config.worker_poll_seconds
                )
            except TimeoutError:
                continue

            try:
                await self.process_delivery(item)
            except Exception:
                logger.exception(
                    "Webhook worker %d failed processing delivery_id=%d",
                    worker_id,
                    item.delivery_id,
                )
            finally:
                self._queue.task_done()
        logger.debug("Webhook worker %d stopped", worker_id)

    async def _retry_loop(self) -> None:
        while not await self._wait_stopped(self._config.retry_interval_seconds):
            try:
                await self.process_retries()
            except Exception:
                logger.exception("Webhook retry scan failed")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await self.cleanup_old_deliveries()
            except Exception:
                logger.exception("Webhook delivery cleanup failed")
            if await self._wait_stopped(self._config.cleanup_interval_seconds):
                return
