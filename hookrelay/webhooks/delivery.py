"""Webhook delivery executor."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from hookrelay.webhooks.config import DispatcherConfig
from hookrelay.webhooks.signer import WebhookSigner

logger = logging.getLogger(__name__)

# Status codes outside 5xx that are still worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


@dataclass
class QueuedDelivery:
    """A pending delivery plus everything needed to send it.

    Carries the owning webhook's URL, secret and headers so workers do not
    have to read the store before sending.
    """

    delivery_id: int
    webhook_id: int
    event_type: str
    payload: bytes
    url: str
    secret: str = field(repr=False)
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """Result of a single webhook delivery attempt."""

    success: bool
    should_retry: bool = False
    status_code: int | None = None
    response_body: str = ""
    error: str | None = None
    latency_ms: int | None = None


def calculate_backoff(
    attempt: int,
    initial: timedelta = timedelta(minutes=1),
    maximum: timedelta = timedelta(hours=24),
) -> timedelta:
    """
    Delay before the next attempt after ``attempt`` failed attempts.

    Doubles from ``initial`` on every attempt and is capped at ``maximum``:
    1 -> 1m, 2 -> 2m, 3 -> 4m, 4 -> 8m, ...
    """
    if attempt < 1:
        attempt = 1
    exponent = attempt - 1
    # 2**40 minutes is far beyond any sane cap; avoid huge float math
    if exponent >= 40:
        return maximum
    delay = initial * (2**exponent)
    return min(delay, maximum)


def classify_status(status_code: int) -> tuple[bool, bool]:
    """Map an HTTP status to ``(success, should_retry)``."""
    if 200 <= status_code < 300:
        return True, False
    if status_code in RETRYABLE_CLIENT_STATUSES or status_code >= 500:
        return False, True
    return False, False


class DeliveryExecutor:
    """Sends queued deliveries over a shared pooled HTTP client."""

    def __init__(
        self,
        config: DispatcherConfig,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the executor.

        Args:
            config: Dispatcher settings (timeout, body cap, user agent)
            client: Optional preconfigured client; the executor owns and
                closes the client only when it creates one itself
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_seconds),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=10),
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client:
            await self._client.aclose()

    def build_headers(self, item: QueuedDelivery) -> httpx.Headers:
        """Fixed webhook headers with the subscriber's custom headers on top."""
        headers = httpx.Headers(
            WebhookSigner.get_headers(
                item.payload,
                item.secret,
                item.event_type,
                item.delivery_id,
                self._config.user_agent,
            )
        )
        for name, value in item.headers.items():
            headers[name] = value
        return headers

    async def deliver(self, item: QueuedDelivery) -> DeliveryResult:
        """Attempt a single delivery and classify the outcome."""
        try:
            url = httpx.URL(item.url)
            headers = self.build_headers(item)
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            return DeliveryResult(success=False, error=f"invalid request: {e}")
        if url.scheme not in ("http", "https") or not url.host:
            return DeliveryResult(
                success=False,
                error="invalid request: URL must be an absolute http(s) URL",
            )

        start_time = time.monotonic()
        try:
            async with self._client.stream(
                "POST",
                url,
                content=item.payload,
                headers=headers,
                timeout=self._config.request_timeout_seconds,
                follow_redirects=True,
            ) as response:
                body = await self._read_body(response)
                status_code = response.status_code
        except (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL) as e:
            return DeliveryResult(success=False, error=f"invalid request: {e}")
        except httpx.TooManyRedirects:
            return DeliveryResult(success=False, error="too many redirects")
        except httpx.TimeoutException:
            return DeliveryResult(success=False, should_retry=True, error="request timeout")
        except httpx.TransportError as e:
            return DeliveryResult(
                success=False,
                should_retry=True,
                error=f"request failed: {e}"[:500],
            )

        latency_ms = int((time.monotonic() - start_time) * 1000)
        success, should_retry = classify_status(status_code)
        logger.debug(
            "Webhook POST %s returned %d in %dms (delivery_id=%d)",
            item.url,
            status_code,
            latency_ms,
            item.delivery_id,
        )
        return DeliveryResult(
            success=success,
            should_retry=should_retry,
            status_code=status_code,
            response_body=body,
            error=None if success else f"HTTP {status_code}",
            latency_ms=latency_ms,
        )

    async def _read_body(self, response: httpx.Response) -> str:
        """Read at most ``max_response_bytes`` of the response body."""
        limit = self._config.max_response_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            remaining = limit - size
            if remaining <= 0:
                break
            chunks.append(chunk[:remaining])
            size += min(len(chunk), remaining)
        return b"".join(chunks).decode("utf-8", errors="replace")
