from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from forum_federation.core.security import generate_keypair
from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import ACTOR_KINDS, CachedActor
from forum_federation.db.repository import FederationRepository

logger = logging.getLogger(__name__)

ACTOR_PATHS = {"person": "u", "community": "c", "feed": "feeds"}


class LocalActorService:
    """Creates local actors and the instance's site actor, each with its own Ed25519 key."""

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.clock = clock

    def actor_id(self, kind: str, name: str) -> str:
        """The ActivityPub id of a local actor; the site actor is the instance root."""
        base = self.settings.base_url
        if kind == "site":
            return f"{base}/"
        return f"{base}/{ACTOR_PATHS[kind]}/{name}"

    def register(
        self,
        kind: str,
        name: str,
        *,
        display_name: Optional[str] = None,
        summary: Optional[str] = None,
        visibility: str = "public",
    ) -> CachedActor:
        """Creates a local actor, or returns the existing one with the same name.

        Args:
            kind: One of person, community, site or feed.
            name: Actor name, unique per kind on this instance.
            display_name: Optional human readable name.
            summary: Optional description.
            visibility: ``private`` for communities that approve their followers.

        Returns:
            The stored actor, including its private key.

        Raises:
            ValueError: If ``kind`` is not an actor kind.
        """
        if kind not in ACTOR_KINDS:
            raise ValueError(f"unknown actor kind {kind!r}")
        existing = self.repository.get_local_actor(kind, name)
        if existing is not None:
            return existing

        base = self.settings.base_url
        ap_id = self.actor_id(kind, name)
        public_key, private_key = generate_keypair()
        now = int(self.clock())
        actor = self.repository.upsert_actor(
            {
                "ap_id": ap_id,
                "kind": kind,
                "name": name,
                "display_name": display_name,
                "summary": summary,
                "public_key": public_key,
                "private_key": private_key,
                "inbox_url": f"{base}/inbox" if kind == "site" else f"{ap_id}/inbox",
                "shared_inbox_url": f"{base}/inbox",
                "followers_url": None if kind == "site" else f"{ap_id}/followers",
                "domain": self.settings.domain,
                "local": True,
                "visibility": visibility,
                "published": now,
                "last_refreshed_at": now,
            }
        )
        logger.info("Registered local %s %s", kind, ap_id)
        return actor

    def ensure_site_actor(self) -> CachedActor:
        """Returns the site actor, creating it on first start."""
        actor = self.repository.get_site_actor(self.settings.domain)
        if actor is not None and actor.local:
            return actor
        return self.register("site", self.settings.domain)


__all__ = ["ACTOR_PATHS", "LocalActorService"]
