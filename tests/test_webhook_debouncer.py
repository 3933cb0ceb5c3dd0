"""Tests for the per-entity debouncer."""

import asyncio
import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from conftest import wait_until
from hookrelay.webhooks.config import DebounceConfig
from hookrelay.webhooks.debouncer import Debouncer
from hookrelay.webhooks.event import Event, FormEventData, PageEventData

CONFIG = DebounceConfig(interval_seconds=0.05, max_wait_seconds=0.2)


def page_event(page_id: int, title: str, event_type: str = "page.updated") -> Event:
    return Event(
        event_type,
        PageEventData(id=page_id, title=title, slug="s", status="draft", author_id=1),
    )


class TestDebounceKeys:
    def test_typed_payload_key(self):
        debouncer = Debouncer(AsyncMock(), CONFIG)

        assert debouncer.key_for(page_event(7, "a")) == ("page.updated", 7)

    def test_dict_with_id_key(self):
        debouncer = Debouncer(AsyncMock(), CONFIG)

        assert debouncer.key_for(Event("page.updated", {"id": 9})) == ("page.updated", 9)

    def test_form_key_uses_submission(self):
        form = FormEventData(
            form_id=1,
            form_name="Contact",
            form_slug="contact",
            submission_id=55,
            submitted_at=datetime.now(UTC),
        )
        debouncer = Debouncer(AsyncMock(), CONFIG)

        assert debouncer.key_for(Event("form.submitted", form)) == ("form.submitted", 55)

    def test_unknown_payload_falls_back_to_type_and_warns_once(self, caplog):
        debouncer = Debouncer(AsyncMock(), CONFIG)

        with caplog.at_level(logging.WARNING, logger="hookrelay.webhooks.debouncer"):
            first = debouncer.key_for(Event("custom.thing", ["a", "b"]))
            second = debouncer.key_for(Event("custom.thing", {"id": "not-an-int"}))

        assert first == second == ("custom.thing", None)
        assert caplog.text.count("debouncing by event type only") == 1


class TestDebouncer:
    @pytest.mark.asyncio
    async def test_burst_is_coalesced_to_last_event(self):
        downstream = AsyncMock()
        debouncer = Debouncer(downstream, CONFIG)

        for i in range(5):
            debouncer.dispatch(page_event(7, f"v{i}"))
            await asyncio.sleep(0.005)

        assert debouncer.pending_count() == 1
        await wait_until(lambda: downstream.await_count == 1)
        await asyncio.sleep(0.1)

        assert downstream.await_count == 1
        assert downstream.await_args.args[0].data.title == "v4"
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_events_spaced_beyond_max_wait_dispatch_separately(self):
        downstream = AsyncMock()
        debouncer = Debouncer(downstream, CONFIG)

        debouncer.dispatch(page_event(7, "first"))
        await asyncio.sleep(0.25)
        debouncer.dispatch(page_event(7, "second"))
        await wait_until(lambda: downstream.await_count == 2)

        titles = [call.args[0].data.title for call in downstream.await_args_list]
        assert titles == ["first", "second"]

    @pytest.mark.asyncio
    async def test_continuous_burst_is_bounded_by_max_wait(self):
        downstream = AsyncMock()
        debouncer = Debouncer(
            downstream, DebounceConfig(interval_seconds=0.05, max_wait_seconds=0.1)
        )

        # Each event arrives before the interval elapses, so only max wait flushes
        for i in range(12):
            debouncer.dispatch(page_event(7, f"v{i}"))
            await asyncio.sleep(0.02)

        assert downstream.await_count >= 1
        await debouncer.stop()
        assert downstream.await_count >= 2

    @pytest.mark.asyncio
    async def test_different_entities_are_not_merged(self):
        downstream = AsyncMock()
        debouncer = Debouncer(downstream, CONFIG)

        debouncer.dispatch(page_event(1, "a"))
        debouncer.dispatch(page_event(2, "b"))
        debouncer.dispatch(page_event(1, "c", event_type="page.published"))

        assert debouncer.pending_count() == 3
        await wait_until(lambda: downstream.await_count == 3)

    @pytest.mark.asyncio
    async def test_flush_dispatches_everything_now(self):
        downstream = AsyncMock()
        debouncer = Debouncer(downstream, DebounceConfig(interval_seconds=60, max_wait_seconds=60))

        debouncer.dispatch(page_event(1, "a"))
        debouncer.dispatch(page_event(2, "b"))

        assert debouncer.flush() == 2
        assert debouncer.pending_count() == 0
        await wait_until(lambda: downstream.await_count == 2)

    @pytest.mark.asyncio
    async def test_stop_flushes_and_waits_for_dispatches(self):
        finished = []

        async def slow_dispatch(event):
            await asyncio.sleep(0.05)
            finished.append(event.data.title)

        debouncer = Debouncer(slow_dispatch, DebounceConfig(interval_seconds=60, max_wait_seconds=60))
        debouncer.dispatch(page_event(1, "a"))

        await debouncer.stop()

        assert finished == ["a"]

    @pytest.mark.asyncio
    async def test_events_arriving_during_stop_are_not_buffered(self):
        finished = []
        debouncer = None

        async def slow_dispatch(event):
            await asyncio.sleep(0.05)
            finished.append(event.data.title)
            if event.data.title == "a":
                debouncer.dispatch(page_event(2, "late"))

        debouncer = Debouncer(slow_dispatch, DebounceConfig(interval_seconds=60, max_wait_seconds=60))
        debouncer.dispatch(page_event(1, "a"))

        await debouncer.stop()

        assert finished == ["a", "late"]
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_buffers_again_after_stop(self):
        debouncer = Debouncer(AsyncMock(), DebounceConfig(interval_seconds=60, max_wait_seconds=60))
        await debouncer.stop()

        debouncer.dispatch(page_event(1, "a"))

        assert debouncer.pending_count() == 1
        await debouncer.stop()

    @pytest.mark.asyncio
    async def test_dispatch_errors_are_logged(self, caplog):
        downstream = AsyncMock(side_effect=RuntimeError("boom"))
        debouncer = Debouncer(downstream, DebounceConfig(interval_seconds=60, max_wait_seconds=60))
        debouncer.dispatch(page_event(1, "a"))

        await debouncer.stop()

        assert downstream.await_count == 1
        assert "Debounced dispatch failed" in caplog.text
