from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from forum_federation.core.policy import DomainPolicyError, FederationPolicy
from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import CachedActor, CachedObject
from forum_federation.db.repository import FederationRepository
from forum_federation.schemas import (
    ACTOR_TYPES,
    CHAT_MESSAGE_TYPES,
    NOTE_TYPES,
    PAGE_TYPES,
    ActorDocument,
    ChatMessageDocument,
    NoteDocument,
    PageDocument,
)
from forum_federation.services.translator import ActivityPubTranslator

if TYPE_CHECKING:
    from forum_federation.core.metrics import FederationMetrics
    from forum_federation.services.http_client import ActivityPubClient


logger = logging.getLogger(__name__)

Resolved = Union[CachedActor, CachedObject]


class ResolverError(Exception):
    """Base class for failures to turn a reference into a stored row."""


class InvalidReference(ResolverError):
    """The reference is malformed, not permitted by policy, or an unknown local id."""


class RecursionExceeded(ResolverError):
    """The fetch budget of the current resolution chain is exhausted."""


class RemoteFetchFailed(ResolverError):
    """A remote document could not be fetched or was not usable.

    ``gone`` is set when the remote server answered 404 or 410.
    """

    def __init__(self, message: str, *, gone: bool = False) -> None:
        super().__init__(message)
        self.gone = gone


class NotAnExpectedType(ResolverError):
    """The document or row does not have the shape the caller asked for."""


@dataclass
class RecursionBudget:
    """Network fetches still allowed while resolving one reference chain."""

    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    def spend(self) -> None:
        """Accounts for one fetch.

        Raises:
            RecursionExceeded: If the budget is already exhausted.
        """
        if self.used >= self.limit:
            raise RecursionExceeded(
                f"resolution needs more than {self.limit} remote fetches"
            )
        self.used += 1


def is_stale(last_refreshed_at: float, now: float, interval: float) -> bool:
    """A cached remote actor is stale once it is older than ``interval`` seconds."""
    return now - last_refreshed_at > interval


class Resolver:
    """Resolves actor and object references to local rows.

    Local references are read from storage. Remote references are served from
    the cache when present and refetched when a cached actor is stale; every
    network fetch is charged to the caller's :class:`RecursionBudget`.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        client: "ActivityPubClient",
        policy: FederationPolicy,
        translator: Optional[ActivityPubTranslator] = None,
        metrics: Optional["FederationMetrics"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.client = client
        self.policy = policy
        self.translator = translator or ActivityPubTranslator(settings.base_url)
        self.metrics = metrics
        self.clock = clock

    def new_budget(self) -> RecursionBudget:
        return RecursionBudget(limit=self.settings.max_fetch_requests)

    def is_stale(self, actor: CachedActor) -> bool:
        if actor.local:
            return False
        return is_stale(
            actor.last_refreshed_at,
            self.clock(),
            self.settings.actor_refresh_interval_seconds,
        )

    async def resolve(self, ref: str, budget: RecursionBudget) -> Resolved:
        """Returns the stored row for ``ref``, fetching it if needed.

        Args:
            ref: Actor or object id.
            budget: Fetch budget shared by the whole resolution chain.

        Raises:
            InvalidReference: If ``ref`` is rejected by policy or is an unknown local id.
            RecursionExceeded: If resolving needs more fetches than ``budget`` allows.
            RemoteFetchFailed: If the document could not be fetched and nothing is cached.
            NotAnExpectedType: If the fetched document is not a supported type.
        """
        if self.policy.is_local(ref):
            row = self._load(ref)
            if row is None:
                raise InvalidReference(f"unknown local reference {ref}")
            return row

        try:
            self.policy.check_url(ref)
        except DomainPolicyError as exc:
            raise InvalidReference(str(exc)) from exc

        actor = self.repository.get_actor(ref)
        if actor is not None:
            if not self.is_stale(actor):
                return actor
            return await self._refresh(actor, budget)

        obj = self.repository.get_object(ref)
        if obj is not None:
            return obj

        document = await self._fetch(ref, budget)
        return await self.upsert_from_document(document, budget)

    async def resolve_actor(
        self, ref: str, budget: RecursionBudget, kind: Optional[str] = None
    ) -> CachedActor:
        row = await self.resolve(ref, budget)
        if not isinstance(row, CachedActor) or (kind and row.kind != kind):
            raise NotAnExpectedType(f"{ref} is not a {kind or 'actor'}")
        return row

    async def resolve_person(self, ref: str, budget: RecursionBudget) -> CachedActor:
        return await self.resolve_actor(ref, budget, kind="person")

    async def resolve_community(self, ref: str, budget: RecursionBudget) -> CachedActor:
        return await self.resolve_actor(ref, budget, kind="community")

    async def resolve_object(
        self, ref: str, budget: RecursionBudget, kind: Optional[str] = None
    ) -> CachedObject:
        row = await self.resolve(ref, budget)
        if not isinstance(row, CachedObject) or (kind and row.kind != kind):
            raise NotAnExpectedType(f"{ref} is not a {kind or 'content object'}")
        return row

    async def upsert_from_document(
        self, document: Mapping[str, Any], budget: RecursionBudget
    ) -> Resolved:
        """Stores a remote document after resolving the references it depends on.

        Used both for fetched documents and for objects embedded in inbound
        activities. Posts need their creator and community, comments their
        creator and the post or comment they reply to, private messages their
        creator and recipient.

        Raises:
            InvalidReference: If the document claims a local id or a forbidden domain.
            NotAnExpectedType: If the document is not a supported, well-formed type.
        """
        ap_id = document.get("id")
        if not isinstance(ap_id, str):
            raise NotAnExpectedType("document has no id")
        if self.policy.is_local(ap_id):
            raise InvalidReference(f"remote document claims local id {ap_id}")
        try:
            self.policy.check_url(ap_id)
        except DomainPolicyError as exc:
            raise InvalidReference(str(exc)) from exc

        doc_type = document.get("type")
        try:
            if doc_type in ACTOR_TYPES:
                return self._store_actor(ActorDocument.model_validate(document))
            if doc_type in PAGE_TYPES:
                return await self._store_post(PageDocument.model_validate(document), budget)
            if doc_type in NOTE_TYPES:
                return await self._store_comment(NoteDocument.model_validate(document), budget)
            if doc_type in CHAT_MESSAGE_TYPES:
                return await self._store_private_message(
                    ChatMessageDocument.model_validate(document), budget
                )
        except ValidationError as exc:
            raise NotAnExpectedType(f"invalid {doc_type} document {ap_id}: {exc}") from exc
        raise NotAnExpectedType(f"unsupported document type {doc_type!r} for {ap_id}")

    async def fetch_document(self, ref: str, budget: RecursionBudget) -> Dict[str, Any]:
        """Fetches a remote document without storing it, e.g. an announced activity.

        Raises:
            InvalidReference: If ``ref`` is local or rejected by policy.
            RecursionExceeded: If ``budget`` is spent.
            RemoteFetchFailed: If the document could not be fetched.
        """
        if self.policy.is_local(ref):
            raise InvalidReference(f"{ref} is a local reference")
        try:
            self.policy.check_url(ref)
        except DomainPolicyError as exc:
            raise InvalidReference(str(exc)) from exc
        return await self._fetch(ref, budget)

    def _load(self, ref: str) -> Optional[Resolved]:
        actor = self.repository.get_actor(ref)
        if actor is not None:
            return actor
        return self.repository.get_object(ref)

    async def _fetch(self, ref: str, budget: RecursionBudget) -> Dict[str, Any]:
        budget.spend()
        try:
            document = await self.client.fetch_object(ref)
        except RemoteFetchFailed:
            self._count_fetch("failed")
            raise
        self._count_fetch("ok")
        return document

    async def _refresh(self, actor: CachedActor, budget: RecursionBudget) -> CachedActor:
        """Refetches a stale actor, keeping the cached row when that fails."""
        try:
            document = await self._fetch(actor.ap_id, budget)
            refreshed = await self.upsert_from_document(document, budget)
        except RemoteFetchFailed as exc:
            if exc.gone:
                logger.info("Actor %s is gone, marking it deleted", actor.ap_id)
                updated = self.repository.update_actor_flags(
                    actor.ap_id, deleted=True, last_refreshed_at=int(self.clock())
                )
                return updated or actor
            logger.warning("Refreshing %s failed, using cached copy: %s", actor.ap_id, exc)
            return actor
        except ResolverError as exc:
            logger.warning("Refreshing %s failed, using cached copy: %s", actor.ap_id, exc)
            return actor
        if not isinstance(refreshed, CachedActor) or refreshed.ap_id != actor.ap_id:
            logger.warning("Refreshing %s returned a different document", actor.ap_id)
            return actor
        return refreshed

    def _store_actor(self, document: ActorDocument) -> CachedActor:
        if document.public_key.owner != document.id:
            raise NotAnExpectedType(f"public key of {document.id} belongs to another actor")
        values = self.translator.actor_values(document, refreshed_at=int(self.clock()))
        actor = self.repository.upsert_actor(values)
        if actor.kind == "community" and document.attributed_to:
            self.repository.replace_moderators(actor.ap_id, document.attributed_to)
        return actor

    async def _store_post(self, document: PageDocument, budget: RecursionBudget) -> CachedObject:
        community_ref = document.community_ref()
        if community_ref is None:
            raise NotAnExpectedType(f"post {document.id} is not addressed to a community")
        await self.resolve_person(document.attributed_to, budget)
        community = await self.resolve_community(community_ref, budget)
        return self.repository.upsert_object(
            self.translator.post_values(document, community.ap_id)
        )

    async def _store_comment(self, document: NoteDocument, budget: RecursionBudget) -> CachedObject:
        await self.resolve_person(document.attributed_to, budget)
        parent = await self.resolve_object(document.in_reply_to, budget)
        if parent.kind == "post":
            post_ap_id, parent_ap_id = parent.ap_id, None
        elif parent.kind == "comment":
            post_ap_id, parent_ap_id = parent.post_ap_id, parent.ap_id
        else:
            raise NotAnExpectedType(f"comment {document.id} replies to a {parent.kind}")
        return self.repository.upsert_object(
            self.translator.comment_values(
                document,
                post_ap_id=post_ap_id,
                parent_ap_id=parent_ap_id,
                community_ap_id=parent.community_ap_id,
            )
        )

    async def _store_private_message(
        self, document: ChatMessageDocument, budget: RecursionBudget
    ) -> CachedObject:
        await self.resolve_person(document.attributed_to, budget)
        await self.resolve_person(document.to[0], budget)
        return self.repository.upsert_object(
            self.translator.private_message_values(document)
        )

    def _count_fetch(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.remote_fetches_total.labels(outcome=outcome).inc()


__all__ = [
    "InvalidReference",
    "NotAnExpectedType",
    "RecursionBudget",
    "RecursionExceeded",
    "RemoteFetchFailed",
    "Resolver",
    "ResolverError",
    "is_stale",
]
