"""Per-entity event debouncer.

Coalesces bursts of events for the same entity (for example page autosave)
into a single downstream dispatch carrying the latest data.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from hookrelay.webhooks.config import DebounceConfig
from hookrelay.webhooks.event import EntityKeyed, Event

logger = logging.getLogger(__name__)

DebounceKey = tuple[str, int | None]


@dataclass
class _PendingEvent:
    event: Event
    first_seen: float
    timer: asyncio.TimerHandle | None = None


class Debouncer:
    """Buffers events per (event type, entity key) with last-write-wins.

    The first event for a key starts a timer of ``interval_seconds``. Each
    later event replaces the buffered one and restarts the timer, unless the
    key has been pending for ``max_wait_seconds``, in which case it is
    flushed at once.
    """

    def __init__(
        self,
        dispatch: Callable[[Event], Awaitable[Any]],
        config: DebounceConfig | None = None,
    ):
        self._dispatch = dispatch
        self._config = config or DebounceConfig()
        self._pending: dict[DebounceKey, _PendingEvent] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._type_only_warned: set[str] = set()
        self._stopping = False

    @property
    def config(self) -> DebounceConfig:
        return self._config

    def key_for(self, event: Event) -> DebounceKey:
        """Build the coalescing key for an event."""
        data = event.data
        if isinstance(data, EntityKeyed):
            return event.event_type, data.entity_key()
        if isinstance(data, dict):
            entity_id = data.get("id")
            if isinstance(entity_id, int) and not isinstance(entity_id, bool):
                return event.event_type, entity_id

        if event.event_type not in self._type_only_warned:
            self._type_only_warned.add(event.event_type)
            logger.warning(
                "No entity key for %s payload, debouncing by event type only (event_type=%s)",
                type(data).__name__,
                event.event_type,
            )
        return event.event_type, None

    def dispatch(self, event: Event) -> None:
        """Buffer an event, or flush it when its key has waited too long."""
        loop = asyncio.get_running_loop()
        if self._stopping:
            self._spawn(event)
            return

        key = self.key_for(event)
        now = loop.time()

        entry = self._pending.get(key)
        if entry is None:
            entry = _PendingEvent(event=event, first_seen=now)
            self._pending[key] = entry
        else:
            entry.event = event
            if entry.timer is not None:
                entry.timer.cancel()
            if now - entry.first_seen >= self._config.max_wait_seconds:
                del self._pending[key]
                logger.debug("Debounce max wait reached, flushing key=%s", key)
                self._spawn(event)
                return

        entry.timer = loop.call_later(self._config.interval_seconds, self._fire, key)

    def _fire(self, key: DebounceKey) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        logger.debug("Debounce interval elapsed, flushing key=%s", key)
        self._spawn(entry.event)

    def _spawn(self, event: Event) -> None:
        task = asyncio.get_running_loop().create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: Event) -> None:
        try:
            await self._dispatch(event)
        except Exception:
            logger.exception(
                "Debounced dispatch failed (event_type=%s)",
                event.event_type,
            )

    def flush(self) -> int:
        """Dispatch every buffered event now. Returns the number flushed."""
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if entry.timer is not None:
                entry.timer.cancel()
            self._spawn(entry.event)
        if pending:
            logger.debug("Flushed %d debounced event(s)", len(pending))
        return len(pending)

    async def stop(self) -> None:
        """Flush all buffered events and wait for in-flight dispatches."""
        self._stopping = True
        try:
            self.flush()
            # Events arriving while stopping are dispatched directly and joined here
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            self._stopping = False

    def pending_count(self) -> int:
        return len(self._pending)
