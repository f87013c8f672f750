from __future__ import annotations

import logging
from typing import Any, Dict, List

from forum_federation.db.models import CachedActor
from forum_federation.models.events import DomainEvent
from forum_federation.models.outgoing import OutgoingMessage
from forum_federation.services.builder import BuildError, MessageBuilder
from forum_federation.services.delivery import DeliveryQueue

logger = logging.getLogger(__name__)


class Outbox:
    """Entry point for the local CRUD layer: domain events in, queued messages out.

    Federation is best-effort. Producers learn which messages were queued and
    never see build or delivery failures.
    """

    def __init__(self, *, builder: MessageBuilder, queue: DeliveryQueue) -> None:
        self.builder = builder
        self.queue = queue

    async def publish(self, event: DomainEvent) -> List[OutgoingMessage]:
        try:
            messages = await self.builder.build(event)
        except BuildError as exc:
            logger.error(
                "Dropping %s, no federation message could be built: %s",
                type(event).__name__,
                exc,
            )  # ALERT: Domain event not federated
            return []
        for message in messages:
            await self.queue.submit(message)
        return messages

    async def relay(
        self, community: CachedActor, activity: Dict[str, Any], origin_domain: str
    ) -> OutgoingMessage:
        """Queues an Announce of an inbound activity by a local community."""
        message = self.builder.build_announce(community, activity, origin_domain)
        await self.queue.submit(message)
        return message


__all__ = ["Outbox"]
