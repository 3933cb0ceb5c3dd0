"""Tests for the delivery executor and backoff schedule."""

from datetime import timedelta

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import RecordingHandler
from hookrelay.webhooks.config import DispatcherConfig
from hookrelay.webhooks.delivery import (
    DeliveryExecutor,
    QueuedDelivery,
    calculate_backoff,
    classify_status,
)
from hookrelay.webhooks.signer import WebhookSigner

PAYLOAD = b'{"type":"page.published","timestamp":"2026-01-15T10:30:00Z","data":{"id":42}}'


def make_item(**overrides) -> QueuedDelivery:
    fields = {
        "delivery_id": 7,
        "webhook_id": 3,
        "event_type": "page.published",
        "payload": PAYLOAD,
        "url": "https://example.com/hook",
        "secret": "s3cret",
    }
    fields.update(overrides)
    return QueuedDelivery(**fields)


def make_executor(handler, **config) -> DeliveryExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeliveryExecutor(DispatcherConfig(**config), client)


class TestBackoff:
    def test_reference_schedule(self):
        assert calculate_backoff(1) == timedelta(minutes=1)
        assert calculate_backoff(2) == timedelta(minutes=2)
        assert calculate_backoff(3) == timedelta(minutes=4)
        assert calculate_backoff(4) == timedelta(minutes=8)

    @settings(max_examples=100)
    @given(attempt=st.integers(min_value=15, max_value=10_000))
    def test_capped_from_attempt_15(self, attempt: int):
        assert calculate_backoff(attempt) == timedelta(hours=24)

    @settings(max_examples=100)
    @given(attempt=st.integers(min_value=1, max_value=200))
    def test_monotonic_and_bounded(self, attempt: int):
        """Backoff never shrinks from one attempt to the next and never exceeds the cap."""
        current = calculate_backoff(attempt)
        following = calculate_backoff(attempt + 1)

        assert following >= current
        assert current <= timedelta(hours=24)

    def test_custom_bounds(self):
        initial = timedelta(seconds=10)
        maximum = timedelta(seconds=30)

        assert [calculate_backoff(n, initial, maximum) for n in range(1, 5)] == [
            timedelta(seconds=10),
            timedelta(seconds=20),
            timedelta(seconds=30),
            timedelta(seconds=30),
        ]


class TestClassifyStatus:
    @pytest.mark.parametrize("status", [200, 201, 204, 299])
    def test_2xx_is_success(self, status: int):
        assert classify_status(status) == (True, False)

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient_statuses_retry(self, status: int):
        assert classify_status(status) == (False, True)

    @pytest.mark.parametrize("status", [301, 400, 401, 403, 404, 410, 422])
    def test_other_statuses_are_permanent(self, status: int):
        assert classify_status(status) == (False, False)


class TestDeliveryExecutor:
    @pytest.mark.asyncio
    async def test_request_headers_and_body(self):
        handler = RecordingHandler([httpx.Response(200, text="thanks")])
        executor = make_executor(handler)

        result = await executor.deliver(make_item())

        assert result.success is True
        assert result.status_code == 200
        assert result.response_body == "thanks"
        assert result.error is None

        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://example.com/hook"
        assert request.content == PAYLOAD
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "HookRelay/1.0"
        assert request.headers["X-Webhook-Event"] == "page.published"
        assert request.headers["X-Webhook-Delivery-ID"] == "7"
        assert WebhookSigner.verify(request.content, request.headers["X-Webhook-Signature"], "s3cret")

    @pytest.mark.asyncio
    async def test_custom_headers_layer_on_top(self):
        handler = RecordingHandler()
        executor = make_executor(handler)

        await executor.deliver(
            make_item(headers={"Authorization": "Bearer abc", "user-agent": "Custom/2.0"})
        )

        request = handler.requests[0]
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["User-Agent"] == "Custom/2.0"
        assert request.headers.get_list("User-Agent") == ["Custom/2.0"]

    @pytest.mark.asyncio
    async def test_response_body_is_capped(self):
        handler = RecordingHandler([httpx.Response(200, content=b"x" * 50_000)])
        executor = make_executor(handler, max_response_bytes=1024)

        result = await executor.deliver(make_item())

        assert result.success is True
        assert len(result.response_body) == 1024

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        executor = make_executor(RecordingHandler([httpx.Response(503, text="busy")]))

        result = await executor.deliver(make_item())

        assert (result.success, result.should_retry) == (False, True)
        assert result.status_code == 503
        assert result.response_body == "busy"
        assert result.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        executor = make_executor(RecordingHandler([httpx.Response(404)]))

        result = await executor.deliver(make_item())

        assert (result.success, result.should_retry) == (False, False)
        assert result.status_code == 404

    @pytest.mark.asyncio
    async def test_rate_limited_is_retryable(self):
        executor = make_executor(RecordingHandler([httpx.Response(429)]))

        result = await executor.deliver(make_item())

        assert (result.success, result.should_retry) == (False, True)

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await make_executor(handler).deliver(make_item())

        assert (result.success, result.should_retry) == (False, True)
        assert result.status_code is None
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await make_executor(handler).deliver(make_item())

        assert (result.success, result.should_retry) == (False, True)
        assert result.error == "request timeout"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["not-a-url", "ftp://example.com/hook"])
    async def test_malformed_url_is_permanent(self, url: str):
        handler = RecordingHandler()

        result = await make_executor(handler).deliver(make_item(url=url))

        assert (result.success, result.should_retry) == (False, False)
        assert result.error.startswith("invalid request")
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_redirect_is_followed_with_body(self):
        handler = RecordingHandler()

        def redirecting(request: httpx.Request) -> httpx.Response:
            if request.url.scheme == "http":
                return httpx.Response(308, headers={"Location": "https://example.com/hook"})
            return handler(request)

        result = await make_executor(redirecting).deliver(make_item(url="http://example.com/hook"))

        assert result.success is True
        assert result.status_code == 200
        [request] = handler.requests
        assert request.method == "POST"
        assert request.content == PAYLOAD
        assert WebhookSigner.verify(request.content, request.headers["X-Webhook-Signature"], "s3cret")

    @pytest.mark.asyncio
    async def test_redirect_loop_is_permanent(self):
        def looping(request: httpx.Request) -> httpx.Response:
            return httpx.Response(307, headers={"Location": "https://example.com/hook"})

        result = await make_executor(looping).deliver(make_item())

        assert (result.success, result.should_retry) == (False, False)
        assert result.error == "too many redirects"

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        executor = DeliveryExecutor(DispatcherConfig())

        await executor.aclose()

        assert executor.client.is_closed

    @pytest.mark.asyncio
    async def test_injected_client_is_left_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(RecordingHandler()))
        executor = DeliveryExecutor(DispatcherConfig(), client)

        await executor.aclose()

        assert not client.is_closed
        await client.aclose()
