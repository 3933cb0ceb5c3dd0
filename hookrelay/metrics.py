"""Prometheus text exposition for the webhook dispatcher."""

from __future__ import annotations

from typing import TYPE_CHECKING

from hookrelay.webhooks.models import DeliveryStatus

if TYPE_CHECKING:
    from hookrelay.webhooks.dispatcher import Dispatcher
    from hookrelay.webhooks.store import WebhookStore


async def render_metrics(store: WebhookStore, dispatcher: Dispatcher | None = None) -> str:
    """Render Prometheus-compatible metrics as plain text."""

    metrics_output = []

    # Deliveries by status, including zero rows for every known status
    counts = await store.count_deliveries_by_status()
    metrics_output.append("# TYPE hookrelay_webhook_deliveries gauge")
    for status in DeliveryStatus:
        metrics_output.append(
            f'hookrelay_webhook_deliveries{{status="{status.value}"}} {counts.get(status.value, 0)}'
        )

    if dispatcher is not None:
        metrics_output.append("# TYPE hookrelay_dispatcher_running gauge")
        metrics_output.append(f"hookrelay_dispatcher_running {int(dispatcher.is_running)}")

        metrics_output.append("# TYPE hookrelay_dispatcher_queue_depth gauge")
        metrics_output.append(f"hookrelay_dispatcher_queue_depth {dispatcher.queue_depth}")

        pending, enabled = dispatcher.debounce_stats()
        metrics_output.append("# TYPE hookrelay_debounce_enabled gauge")
        metrics_output.append(f"hookrelay_debounce_enabled {int(enabled)}")
        metrics_output.append("# TYPE hookrelay_debounce_pending gauge")
        metrics_output.append(f"hookrelay_debounce_pending {pending}")

    return "\n".join(metrics_output) + "\n"
