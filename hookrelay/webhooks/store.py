"""Webhook persistence port and its SQLAlchemy implementation.

The dispatcher only talks to :class:`WebhookStore`. Outcome writes are
guarded by ``status = 'pending'`` so that a delivered or dead record is
never mutated by a late or duplicate worker.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import String, cast, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.exceptions import StoreError
from hookrelay.webhooks.models import TERMINAL_STATUSES, DeliveryStatus, Webhook, WebhookDelivery


@dataclass
class DeliveryStats:
    """Delivery counts for one webhook."""

    total: int = 0
    delivered: int = 0
    pending: int = 0
    dead: int = 0


class WebhookStore(Protocol):
    """Persistence operations the dispatcher depends on."""

    async def get_webhook(self, webhook_id: int) -> Webhook | None: ...

    async def list_webhooks_for_event(self, event_type: str) -> list[Webhook]: ...

    async def create_delivery(
        self,
        *,
        webhook_id: int,
        event_type: str,
        payload: str,
        now: datetime,
    ) -> WebhookDelivery: ...

    async def get_delivery(self, delivery_id: int) -> WebhookDelivery | None: ...

    async def get_pending_deliveries(
        self, now: datetime, limit: int
    ) -> list[WebhookDelivery]: ...

    async def mark_delivered(
        self,
        delivery_id: int,
        *,
        response_code: int,
        response_body: str,
        now: datetime,
    ) -> bool: ...

    async def schedule_retry(
        self,
        delivery_id: int,
        *,
        response_code: int | None,
        response_body: str | None,
        error_message: str | None,
        next_retry_at: datetime,
        now: datetime,
    ) -> bool: ...

    async def mark_dead(
        self,
        delivery_id: int,
        *,
        error_message: str | None,
        now: datetime,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> bool: ...

    async def reset_delivery_for_retry(self, delivery_id: int, now: datetime) -> bool: ...

    async def delete_old_deliveries(self, cutoff: datetime) -> int: ...

    async def delivery_stats(
        self, webhook_id: int, since: datetime | None = None
    ) -> DeliveryStats: ...

    async def last_successful_delivery(self, webhook_id: int) -> WebhookDelivery | None: ...

    async def count_deliveries_by_status(self) -> dict[str, int]: ...


class SQLAlchemyWebhookStore:
    """WebhookStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreError(f"{operation} failed: {e}") from e

    # Webhooks

    async def create_webhook(
        self,
        *,
        name: str,
        url: str,
        secret: str,
        events: list[str],
        is_active: bool = True,
        headers: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> Webhook:
        now = now or datetime.now(UTC)
        webhook = Webhook(
            name=name,
            url=url,
            secret=secret,
            events=list(events),
            is_active=is_active,
            headers=dict(headers or {}),
            created_at=now,
            updated_at=now,
        )
        async with self._session("create webhook") as session:
            session.add(webhook)
            await session.commit()
        return webhook

    async def update_webhook(self, webhook_id: int, **changes: Any) -> Webhook | None:
        """Update name, url, secret, events, is_active or headers."""
        allowed = {"name", "url", "secret", "events", "is_active", "headers"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown webhook fields: {', '.join(sorted(unknown))}")

        async with self._session("update webhook") as session:
            webhook = await session.get(Webhook, webhook_id)
            if webhook is None:
                return None
            for key, value in changes.items():
                setattr(webhook, key, value)
            webhook.updated_at = datetime.now(UTC)
            await session.commit()
            return webhook

    async def set_webhook_active(self, webhook_id: int, active: bool) -> bool:
        async with self._session("set webhook active") as session:
            result = await session.execute(
                update(Webhook)
                .where(Webhook.id == webhook_id)
                .values(is_active=active, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_webhook(self, webhook_id: int) -> Webhook | None:
        async with self._session("get webhook") as session:
            return await session.get(Webhook, webhook_id)

    async def list_webhooks_for_event(self, event_type: str) -> list[Webhook]:
        """Active webhooks whose event list probably contains ``event_type``.

        The text match can return false positives; callers re-check with
        :meth:`Webhook.subscribes_to`.
        """
        async with self._session("list webhooks for event") as session:
            result = await session.execute(
                select(Webhook)
                .where(
                    Webhook.is_active.is_(True),
                    cast(Webhook.events, String).like(f'%"{event_type}"%'),
                )
                .order_by(Webhook.id)
            )
            return list(result.scalars().all())

    # Deliveries

    async def create_delivery(
        self,
        *,
        webhook_id: int,
        event_type: str,
        payload: str,
        now: datetime,
    ) -> WebhookDelivery:
        # next_retry_at is set immediately so the retry scanner can find the
        # record even if it never makes it onto the in-memory queue.
        delivery = WebhookDelivery(
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        async with self._session("create delivery") as session:
            session.add(delivery)
            await session.commit()
        return delivery

    async def get_delivery(self, delivery_id: int) -> WebhookDelivery | None:
        async with self._session("get delivery") as session:
            return await session.get(WebhookDelivery, delivery_id)

    async def list_deliveries(
        self, webhook_id: int, limit: int = 50, offset: int = 0
    ) -> list[WebhookDelivery]:
        async with self._session("list deliveries") as session:
            result = await session.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def get_pending_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """Pending deliveries due at ``now``, oldest eligible first."""
        async with self._session("get pending deliveries") as session:
            result = await session.execute(
                select(WebhookDelivery)
                .where(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    or_(
                        WebhookDelivery.next_retry_at.is_(None),
                        WebhookDelivery.next_retry_at <= now,
                    ),
                )
                .order_by(
                    func.coalesce(WebhookDelivery.next_retry_at, WebhookDelivery.created_at),
                    WebhookDelivery.id,
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _update_pending(self, operation: str, delivery_id: int, **values: Any) -> bool:
        async with self._session(operation) as session:
            result = await session.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                )
                .values(attempt_count=WebhookDelivery.attempt_count + 1, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_delivered(
        self,
        delivery_id: int,
        *,
        response_code: int,
        response_body: str,
        now: datetime,
    ) -> bool:
        return await self._update_pending(
            "mark delivery delivered",
            delivery_id,
            status=DeliveryStatus.DELIVERED.value,
            response_code=response_code,
            response_body=response_body,
            delivered_at=now,
            next_retry_at=None,
            updated_at=now,
        )

    async def schedule_retry(
        self,
        delivery_id: int,
        *,
        response_code: int | None,
        response_body: str | None,
        error_message: str | None,
        next_retry_at: datetime,
        now: datetime,
    ) -> bool:
        return await self._update_pending(
            "schedule delivery retry",
            delivery_id,
            response_code=response_code,
            response_body=response_body,
            error_message=error_message,
            next_retry_at=next_retry_at,
            updated_at=now,
        )

    async def mark_dead(
        self,
        delivery_id: int,
        *,
        error_message: str | None,
        now: datetime,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": DeliveryStatus.DEAD.value,
            "error_message": error_message,
            "next_retry_at": None,
            "updated_at": now,
        }
        if response_code is not None:
            values["response_code"] = response_code
        if response_body is not None:
            values["response_body"] = response_body
        return await self._update_pending("mark delivery dead", delivery_id, **values)

    async def reset_delivery_for_retry(self, delivery_id: int, now: datetime) -> bool:
        """Put any delivery back into the pending queue with a fresh budget."""
        async with self._session("reset delivery") as session:
            result = await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    next_retry_at=now,
                    delivered_at=None,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def delete_old_deliveries(self, cutoff: datetime) -> int:
        """Delete delivered/dead records last touched before ``cutoff``."""
        async with self._session("delete old deliveries") as session:
            result = await session.execute(
                delete(WebhookDelivery)
                .where(
                    WebhookDelivery.status.in_(TERMINAL_STATUSES),
                    WebhookDelivery.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    # Statistics

    async def delivery_stats(self, webhook_id: int, since: datetime | None = None) -> DeliveryStats:
        query = (
            select(WebhookDelivery.status, func.count())
            .where(WebhookDelivery.webhook_id == webhook_id)
            .group_by(WebhookDelivery.status)
        )
        if since is not None:
            query = query.where(WebhookDelivery.created_at >= since)

        async with self._session("delivery stats") as session:
            result = await session.execute(query)
            counts = {status: count for status, count in result.all()}

        return DeliveryStats(
            total=sum(counts.values()),
            delivered=counts.get(DeliveryStatus.DELIVERED.value, 0),
            pending=counts.get(DeliveryStatus.PENDING.value, 0),
            dead=counts.get(DeliveryStatus.DEAD.value, 0),
        )

    async def last_successful_delivery(self, webhook_id: int) -> WebhookDelivery | None:
        async with self._session("last successful delivery") as session:
            result = await session.execute(
                select(WebhookDelivery)
                .where(
                    WebhookDelivery.webhook_id == webhook_id,
                    WebhookDelivery.status == DeliveryStatus.DELIVERED.value,
                )
                .order_by(WebhookDelivery.delivered_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def count_deliveries_by_status(self) -> dict[str, int]:
        async with self._session("count deliveries") as session:
            result = await session.execute(
                select(WebhookDelivery.status, func.count()).group_by(WebhookDelivery.status)
            )
            return {status: count for status, count in result.all()}
