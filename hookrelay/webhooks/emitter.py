"""Webhook event emitter used by request handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from hookrelay.webhooks.event import (
    EVENT_FORM_SUBMITTED,
    EVENT_MEDIA_DELETED,
    EVENT_PAGE_DELETED,
    EVENT_USER_DELETED,
    FormEventData,
    MediaEventData,
    PageEventData,
    UserEventData,
)

if TYPE_CHECKING:
    from hookrelay.webhooks.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

# Deletions are never coalesced away by the debouncer
IMMEDIATE_EVENTS = frozenset({EVENT_PAGE_DELETED, EVENT_MEDIA_DELETED, EVENT_USER_DELETED})


class WebhookEmitter:
    """Emits webhook events without ever failing the calling handler."""

    def __init__(self, dispatcher: Dispatcher | None):
        self._dispatcher = dispatcher

    async def emit(self, event_type: str, data: Any, *, immediate: bool = False) -> bool:
        """
        Hand an event to the dispatcher.

        Args:
            event_type: The event type (e.g., "page.updated")
            data: Typed event payload or a JSON-serializable mapping
            immediate: Bypass the debouncer

        Returns:
            True if the dispatcher accepted the event
        """
        if self._dispatcher is None:
            logger.debug("No webhook dispatcher configured, skipping event_type=%s", event_type)
            return False

        try:
            if immediate or event_type in IMMEDIATE_EVENTS:
                await self._dispatcher.dispatch_immediate(event_type, data)
            else:
                await self._dispatcher.dispatch_event(event_type, data)
        except Exception as e:
            logger.error("Failed to dispatch webhook event (event_type=%s): %s", event_type, e)
            return False
        return True

    async def emit_page_event(self, event_type: str, page: PageEventData) -> bool:
        """Convenience method for page events."""
        return await self.emit(event_type, page)

    async def emit_media_event(self, event_type: str, media: MediaEventData) -> bool:
        """Convenience method for media events."""
        return await self.emit(event_type, media)

    async def emit_user_event(self, event_type: str, user: UserEventData) -> bool:
        """Convenience method for user events."""
        return await self.emit(event_type, user)

    async def emit_form_submission(self, form: FormEventData) -> bool:
        """Convenience method for form submissions."""
        return await self.emit(EVENT_FORM_SUBMITTED, form)
