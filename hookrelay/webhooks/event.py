"""Webhook event data model."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from hookrelay.exceptions import EventSerializationError

# Event types that can trigger webhooks
EVENT_PAGE_CREATED = "page.created"
EVENT_PAGE_UPDATED = "page.updated"
EVENT_PAGE_DELETED = "page.deleted"
EVENT_PAGE_PUBLISHED = "page.published"
EVENT_PAGE_UNPUBLISHED = "page.unpublished"
EVENT_MEDIA_UPLOADED = "media.uploaded"
EVENT_MEDIA_DELETED = "media.deleted"
EVENT_FORM_SUBMITTED = "form.submitted"
EVENT_USER_CREATED = "user.created"
EVENT_USER_DELETED = "user.deleted"
EVENT_TEST = "test"

# All event types available for subscription, with descriptions
ALL_WEBHOOK_EVENTS: list[tuple[str, str]] = [
    (EVENT_PAGE_CREATED, "When a new page is created"),
    (EVENT_PAGE_UPDATED, "When a page is updated"),
    (EVENT_PAGE_DELETED, "When a page is deleted"),
    (EVENT_PAGE_PUBLISHED, "When a page is published"),
    (EVENT_PAGE_UNPUBLISHED, "When a page is unpublished"),
    (EVENT_MEDIA_UPLOADED, "When media is uploaded"),
    (EVENT_MEDIA_DELETED, "When media is deleted"),
    (EVENT_FORM_SUBMITTED, "When a form is submitted"),
    (EVENT_USER_CREATED, "When a user is created"),
    (EVENT_USER_DELETED, "When a user is deleted"),
]


@runtime_checkable
class EntityKeyed(Protocol):
    """Payload that names the entity it describes.

    The debouncer coalesces events per (event type, entity key). Returning
    None opts the payload out of entity-level coalescing.
    """

    def entity_key(self) -> int | None: ...


class EventData(BaseModel):
    """Base class for typed event payloads."""

    model_config = ConfigDict(frozen=True)

    def entity_key(self) -> int | None:
        return None


class PageEventData(EventData):
    """Data for page-related events."""

    id: int
    title: str
    slug: str
    status: str
    author_id: int
    author_email: str | None = None
    language_code: str | None = None
    published_at: datetime | None = None

    def entity_key(self) -> int | None:
        return self.id


class MediaEventData(EventData):
    """Data for media-related events."""

    id: int
    uuid: str
    filename: str
    mime_type: str
    size: int
    uploader_id: int

    def entity_key(self) -> int | None:
        return self.id


class FormEventData(EventData):
    """Data for form submission events.

    Keyed by submission, so two different submissions of the same form are
    never merged.
    """

    form_id: int
    form_name: str
    form_slug: str
    submission_id: int
    data: dict[str, str] = Field(default_factory=dict)
    submitted_at: datetime

    def entity_key(self) -> int | None:
        return self.submission_id


class UserEventData(EventData):
    """Data for user-related events."""

    id: int
    email: str
    name: str
    role: str

    def entity_key(self) -> int | None:
        return self.id


class TestEventData(EventData):
    """Data for test webhook deliveries."""

    __test__ = False

    message: str = "This is a test webhook delivery"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    webhook_id: int | None = None
    triggered_by: dict[str, Any] | None = None


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass
class Event:
    """Represents a webhook event to be delivered.

    Events are transient: only their serialized form is persisted, inside
    each delivery record.
    """

    event_type: str
    data: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        """Convert to JSON-serializable payload."""
        data = self.data
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", exclude_none=True)
        return {
            "type": self.event_type,
            "timestamp": _rfc3339(self.timestamp),
            "data": data,
        }

    def to_json(self) -> bytes:
        """
        Serialize the event to the UTF-8 JSON body sent to subscribers.

        Raises:
            EventSerializationError: If the payload is not JSON-encodable
        """
        try:
            return json.dumps(
                self.to_payload(),
                separators=(",", ":"),
                ensure_ascii=False,
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EventSerializationError(self.event_type, str(e)) from e
