from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from forum_federation.db.models import CachedActor
from forum_federation.core.policy import DomainPolicyError
from forum_federation.services.resolver import InvalidReference, RecursionBudget, ResolverError

if TYPE_CHECKING:
    from forum_federation.services.http_client import ActivityPubClient
    from forum_federation.services.resolver import Resolver


logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"@(?P<name>[\w.]+)@(?P<domain>[a-zA-Z0-9._:-]+\b)")


@dataclass(frozen=True)
class Mention:
    name: str
    domain: str

    @property
    def handle(self) -> str:
        return f"@{self.name}@{self.domain}"

    @property
    def host(self) -> str:
        return self.domain.split(":")[0].lower()


@dataclass(frozen=True)
class ResolvedMention:
    actor: CachedActor
    handle: str


def scrape_mentions(text: Optional[str]) -> List[Mention]:
    """Finds ``@name@domain`` mentions in ``text``, in order and without duplicates."""
    if not text:
        return []
    seen = {}
    for match in MENTION_RE.finditer(text):
        mention = Mention(name=match.group("name"), domain=match.group("domain"))
        seen.setdefault((mention.name, mention.host), mention)
    return list(seen.values())


class MentionResolver:
    """Turns the non-local mentions of a text into cached person actors."""

    def __init__(self, *, resolver: "Resolver", client: "ActivityPubClient") -> None:
        self.resolver = resolver
        self.client = client

    async def resolve(self, text: Optional[str], budget: RecursionBudget) -> List[ResolvedMention]:
        """Resolves mentioned remote actors; unresolvable mentions are skipped.

        Mentions of local users are left out: they are notified in-process.
        """
        resolved: List[ResolvedMention] = []
        for mention in scrape_mentions(text):
            if mention.host == self.resolver.policy.local_domain:
                continue
            try:
                actor = await self._resolve_one(mention, budget)
            except ResolverError as exc:
                logger.warning("Could not resolve mention %s: %s", mention.handle, exc)
                continue
            resolved.append(ResolvedMention(actor=actor, handle=mention.handle))
        return resolved

    async def _resolve_one(self, mention: Mention, budget: RecursionBudget) -> CachedActor:
        cached = self.resolver.repository.find_actor("person", mention.name, mention.host)
        if cached is not None:
            return await self.resolver.resolve_person(cached.ap_id, budget)
        try:
            self.resolver.policy.check_domain(mention.host)
        except DomainPolicyError as exc:
            raise InvalidReference(str(exc)) from exc
        budget.spend()
        actor_url = await self.client.webfinger(mention.name, mention.domain)
        return await self.resolver.resolve_person(actor_url, budget)


__all__ = ["MENTION_RE", "Mention", "MentionResolver", "ResolvedMention", "scrape_mentions"]
