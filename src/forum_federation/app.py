from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI

from forum_federation import __version__
from forum_federation.api import api_router
from forum_federation.core import FederationSettings
from forum_federation.core.event_bus import EventBus
from forum_federation.core.metrics import FederationMetrics
from forum_federation.core.policy import ContentFilter, FederationPolicy
from forum_federation.db import DatabaseSessionManager, FederationRepository
from forum_federation.services import (
    ActivityPubClient,
    ActivityPubTranslator,
    AudienceResolver,
    DeliveryQueue,
    HttpTransport,
    InboxService,
    LocalActorService,
    MentionResolver,
    MessageBuilder,
    Outbox,
    Resolver,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _load_settings() -> FederationSettings:
    """Loads federation settings from the environment."""
    return FederationSettings()


def create_app(
    settings: Optional[FederationSettings] = None,
    *,
    fetch_transport: Optional[httpx.AsyncBaseTransport] = None,
    delivery_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Creates and configures the FastAPI application for the federation engine.

    Args:
        settings: Optional FederationSettings instance. If None, settings are loaded.
        fetch_transport: Optional httpx transport for fetching remote objects.
        delivery_transport: Optional httpx transport for delivering activities.

    Returns:
        A configured FastAPI application instance.
    """
    settings = settings or _load_settings()

    db_manager = DatabaseSessionManager(settings.database_url)
    db_manager.create_all()  # IMPORTANT: In production, use a dedicated migration tool (e.g., Alembic) for schema management.
    repository = FederationRepository(db_manager)

    policy = FederationPolicy.from_settings(settings)
    content_filter = ContentFilter.from_settings(settings)
    metrics = FederationMetrics()
    event_bus = EventBus()
    translator = ActivityPubTranslator(settings.base_url)

    client = ActivityPubClient.from_settings(settings, transport=fetch_transport)
    resolver = Resolver(
        settings=settings,
        repository=repository,
        client=client,
        policy=policy,
        translator=translator,
        metrics=metrics,
    )
    builder = MessageBuilder(
        settings=settings,
        repository=repository,
        resolver=resolver,
        mentions=MentionResolver(resolver=resolver, client=client),
        translator=translator,
    )
    transport = HttpTransport.from_settings(settings, transport=delivery_transport)
    queue = DeliveryQueue(
        settings=settings,
        repository=repository,
        audience=AudienceResolver(settings=settings, repository=repository, policy=policy),
        transport=transport,
        event_bus=event_bus,
        metrics=metrics,
    )
    outbox = Outbox(builder=builder, queue=queue)
    inbox = InboxService(
        settings=settings,
        repository=repository,
        resolver=resolver,
        policy=policy,
        content_filter=content_filter,
        outbox=outbox,
        event_bus=event_bus,
        metrics=metrics,
    )

    actor_service = LocalActorService(settings=settings, repository=repository)
    site = actor_service.ensure_site_actor()
    # Fetches are signed by the site actor so instances requiring signed GETs answer.
    client.set_signing_key(f"{site.ap_id}#main-key", site.private_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await queue.start()
        try:
            yield
        finally:
            await queue.stop()
            await event_bus.drain()
            await client.aclose()
            await transport.aclose()
            db_manager.dispose()

    app = FastAPI(title="Forum Federation", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.db_manager = db_manager
    app.state.repository = repository
    app.state.policy = policy
    app.state.metrics = metrics
    app.state.event_bus = event_bus
    app.state.translator = translator
    app.state.resolver = resolver
    app.state.delivery_queue = queue
    app.state.outbox = outbox
    app.state.inbox_service = inbox
    app.state.actor_service = actor_service

    if settings.prometheus_port > 0:
        metrics.serve(settings.prometheus_port)
        logger.info("Prometheus metrics exported on port %s", settings.prometheus_port)

    app.include_router(api_router)

    return app


__all__ = ["create_app"]
