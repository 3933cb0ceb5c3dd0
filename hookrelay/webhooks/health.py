"""Per-webhook delivery health."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from hookrelay.webhooks.store import WebhookStore


class HealthStatus(StrEnum):
    UNKNOWN = "unknown"
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass
class WebhookHealth:
    """Delivery statistics and health status for one webhook."""

    webhook_id: int
    total_delivered: int
    total_pending: int
    total_dead: int
    success_rate: float
    status: HealthStatus
    last_24h_delivered: int
    last_24h_total: int
    last_successful_at: datetime | None = None
    last_successful_event: str | None = None


def calculate_health_status(success_rate: float, total: int) -> HealthStatus:
    """Green at 95% or more, yellow at 80% or more, otherwise red."""
    if total == 0:
        return HealthStatus.UNKNOWN
    if success_rate >= 95:
        return HealthStatus.GREEN
    if success_rate >= 80:
        return HealthStatus.YELLOW
    return HealthStatus.RED


async def webhook_health(
    store: WebhookStore,
    webhook_id: int,
    now: datetime | None = None,
) -> WebhookHealth:
    """Compute health for a webhook from its delivery history."""
    now = now or datetime.now(UTC)
    stats = await store.delivery_stats(webhook_id)
    stats_24h = await store.delivery_stats(webhook_id, since=now - timedelta(hours=24))
    last = await store.last_successful_delivery(webhook_id)

    success_rate = stats.delivered / stats.total * 100 if stats.total else 0.0

    return WebhookHealth(
        webhook_id=webhook_id,
        total_delivered=stats.delivered,
        total_pending=stats.pending,
        total_dead=stats.dead,
        success_rate=success_rate,
        status=calculate_health_status(success_rate, stats.total),
        last_24h_delivered=stats_24h.delivered,
        last_24h_total=stats_24h.total,
        last_successful_at=last.delivered_at if last else None,
        last_successful_event=last.event_type if last else None,
    )
