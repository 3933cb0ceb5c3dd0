from .debouncer import Debouncer
from .delivery import DeliveryExecutor, DeliveryResult, QueuedDelivery, calculate_backoff
from .dispatcher import Dispatcher, DispatcherState
from .emitter import WebhookEmitter
from .event import ALL_WEBHOOK_EVENTS, EntityKeyed, Event
from .signer import WebhookSigner, generate_webhook_secret
from .store import SQLAlchemyWebhookStore, WebhookStore

__all__ = [
    "Dispatcher",
    "DispatcherState",
    "Debouncer",
    "DeliveryExecutor",
    "DeliveryResult",
    "QueuedDelivery",
    "calculate_backoff",
    "WebhookEmitter",
    "Event",
    "EntityKeyed",
    "ALL_WEBHOOK_EVENTS",
    "WebhookSigner",
    "generate_webhook_secret",
    "WebhookStore",
    "SQLAlchemyWebhookStore",
]
