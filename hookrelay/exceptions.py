"""HookRelay exception hierarchy.

Delivery failures are not raised: the executor reports them as
``DeliveryResult`` values. Exceptions are reserved for programmer and
configuration errors and for persistence failures.
"""

from __future__ import annotations


class HookRelayError(Exception):
    """Base exception for all HookRelay errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code.
    """

    code: str = "hookrelay_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class StoreError(HookRelayError):
    """A persistence operation failed.

    Raised by store implementations so the dispatcher can handle storage
    failures without depending on a particular database driver.
    """

    code: str = "store_error"


class EventSerializationError(HookRelayError):
    """An event could not be encoded as JSON.

    Aborts the whole dispatch; it is never retried per subscriber.
    """

    code: str = "event_serialization_error"

    def __init__(self, event_type: str, reason: str) -> None:
        self.event_type = event_type
        super().__init__(f"cannot serialize {event_type} event: {reason}")


class NotFoundError(HookRelayError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "webhook", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: int) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")
