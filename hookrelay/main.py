"""HookRelay - host application wiring."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import Settings, get_settings
from hookrelay.db.session import get_session_factory
from hookrelay.webhooks.config import DispatcherConfig, DispatcherConfigLoader
from hookrelay.webhooks.dispatcher import Dispatcher
from hookrelay.webhooks.store import SQLAlchemyWebhookStore

logger = logging.getLogger(__name__)


def create_dispatcher(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
    config: DispatcherConfig | None = None,
) -> Dispatcher:
    """
    Build a dispatcher from application settings.

    Args:
        settings: Application settings (process settings when omitted)
        session_factory: Session factory (engine from DATABASE_URL when omitted)
        http_client: Optional shared outbound HTTP client
        config: Dispatcher tuning (loaded from WEBHOOK_CONFIG_PATH when omitted)
    """
    settings = settings or get_settings()
    logging.getLogger("hookrelay").setLevel(settings.LOG_LEVEL)

    if config is None:
        config = DispatcherConfigLoader.load(settings.WEBHOOK_CONFIG_PATH)

    store = SQLAlchemyWebhookStore(session_factory or get_session_factory())
    return Dispatcher(store, config, http_client=http_client)


@asynccontextmanager
async def dispatcher_lifespan(
    dispatcher: Dispatcher | None = None,
    **kwargs,
) -> AsyncIterator[Dispatcher]:
    """Start a dispatcher for the lifetime of the host application.

    Keyword arguments are passed to :func:`create_dispatcher` when no
    dispatcher is given.
    """
    if dispatcher is None:
        dispatcher = create_dispatcher(**kwargs)
    await dispatcher.start()
    try:
        yield dispatcher
    finally:
        await dispatcher.stop()
