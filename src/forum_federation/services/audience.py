from __future__ import annotations

import logging
from typing import List, Set

from forum_federation.core.policy import FederationPolicy, url_domain
from forum_federation.core.settings import FederationSettings
from forum_federation.db.repository import FederationRepository
from forum_federation.models.outgoing import Audience

logger = logging.getLogger(__name__)


class AudienceResolver:
    """Turns an audience descriptor into the concrete list of remote inboxes."""

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        policy: FederationPolicy,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.policy = policy

    def resolve(self, audience: Audience) -> List[str]:
        """Resolves every rule of ``audience`` and returns the union.

        Followers contribute their shared inbox when they have one, so an
        instance hosting many followers receives a single delivery. Local
        inboxes, domains rejected by policy and ``exclude_domains`` are dropped.

        Returns:
            Sorted, de-duplicated inbox URLs.
        """
        candidates: List[str] = list(audience.inboxes)
        if audience.all_instances:
            candidates.extend(self._instance_inboxes())
        for target in (
            audience.followers_of_community,
            audience.followers_of_person,
            audience.followers_of_feed,
        ):
            if target:
                candidates.extend(
                    shared or inbox
                    for inbox, shared in self.repository.follower_inboxes(target)
                )

        excluded = {domain.lower() for domain in audience.exclude_domains}
        inboxes: Set[str] = set()
        for inbox in candidates:
            domain = url_domain(inbox or "")
            if not domain or domain == self.policy.local_domain or domain in excluded:
                continue
            if not self.policy.permits(inbox):
                logger.debug("Skipping inbox %s rejected by federation policy", inbox)
                continue
            inboxes.add(inbox)
        return sorted(inboxes)

    def _instance_inboxes(self) -> List[str]:
        site_inboxes = self.repository.site_actor_inboxes()
        return [
            site_inboxes.get(domain) or f"{self.settings.protocol}://{domain}/inbox"
            for domain in self.repository.known_instances()
        ]


__all__ = ["AudienceResolver"]
