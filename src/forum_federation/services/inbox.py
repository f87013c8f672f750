from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from forum_federation.core.event_bus import EventBus
from forum_federation.core.policy import ContentFilter, DomainPolicyError, FederationPolicy, url_domain
from forum_federation.core.security import (
    SignatureVerificationError,
    parse_signature_header,
    verify_request,
)
from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import CachedActor, CachedObject
from forum_federation.db.repository import FederationRepository, PersistenceFailure
from forum_federation.models.events import FollowAccepted
from forum_federation.models.federation import ActivityParseError, InboundRequest
from forum_federation.schemas import (
    ACTOR_TYPES,
    CHAT_MESSAGE_TYPES,
    NOTE_TYPES,
    PAGE_TYPES,
    Activity,
    NoteDocument,
    PageDocument,
)
from forum_federation.services.resolver import RecursionBudget, Resolver, ResolverError

if TYPE_CHECKING:
    from forum_federation.core.metrics import FederationMetrics
    from forum_federation.services.outbox import Outbox


logger = logging.getLogger(__name__)

CONTENT_TYPES = PAGE_TYPES + NOTE_TYPES + CHAT_MESSAGE_TYPES
ANNOUNCEABLE = (
    "Create", "Update", "Delete", "Remove", "Add", "Like", "Dislike", "Undo", "Block", "Lock",
)
MODERATORS_SUFFIX = "/moderators"


class Rejection(str, Enum):
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    DOMAIN_MISMATCH = "domain_mismatch"
    FORBIDDEN = "forbidden"
    UNKNOWN_RECIPIENT = "unknown_recipient"


class InboxRejection(Exception):
    """Base class for reasons an inbound activity is refused."""

    reason = Rejection.MALFORMED

    def __init__(self, message: str, sub_reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.sub_reason = sub_reason


class MalformedActivity(InboxRejection):
    reason = Rejection.MALFORMED


class InvalidSignature(InboxRejection):
    reason = Rejection.INVALID_SIGNATURE


class DomainMismatch(InboxRejection):
    reason = Rejection.DOMAIN_MISMATCH


class UnknownRecipient(InboxRejection):
    reason = Rejection.UNKNOWN_RECIPIENT


class Forbidden(InboxRejection):
    """Refused by moderation policy; ``sub_reason`` names the rule."""

    reason = Rejection.FORBIDDEN

    def __init__(self, sub_reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or sub_reason, sub_reason=sub_reason)


@dataclass(frozen=True)
class InboxOutcome:
    """Result of one inbound delivery: applied, replayed, or rejected with a reason."""

    activity_id: Optional[str] = None
    activity_type: Optional[str] = None
    replay: bool = False
    rejection: Optional[Rejection] = None
    sub_reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.rejection is None


@dataclass
class _Context:
    activity: Activity
    raw: Dict[str, Any]
    actor: CachedActor
    budget: RecursionBudget
    announced_by: Optional[CachedActor] = None


@dataclass
class _Applied:
    changes: List[Tuple[Any, str]] = field(default_factory=list)
    # Local community that should announce the activity to its followers.
    relay_via: Optional[CachedActor] = None


Handler = Callable[[_Context], Awaitable[_Applied]]
UndoHandler = Callable[[_Context, Activity], Awaitable[_Applied]]


def _first_ref(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) else None


class InboxService:
    """Verifies inbound activities and merges them into local storage.

    Stages run in order and stop at the first rejection: parse, recipient,
    HTTP signature, domain consistency, replay, moderation policy, apply.
    Every write is an upsert keyed by ActivityPub id, so redelivery is safe.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        resolver: Resolver,
        policy: FederationPolicy,
        content_filter: Optional[ContentFilter] = None,
        outbox: Optional["Outbox"] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional["FederationMetrics"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the InboxService with required dependencies.

        Args:
            settings: Configuration settings.
            repository: Storage for cached actors, objects and the activity log.
            resolver: Resolver used for signing keys and referenced objects.
            policy: Domain allow/deny policy.
            content_filter: Optional keyword filter for inbound text.
            outbox: Used to accept follows and to relay activities of local communities.
            event_bus: Receives ``on_applied`` notifications.
            metrics: Optional Prometheus collectors.
            clock: Time source for signature date checks.
        """
        self._settings = settings
        self._repository = repository
        self._resolver = resolver
        self._policy = policy
        self._content_filter = content_filter or ContentFilter()
        self._outbox = outbox
        self._event_bus = event_bus
        self._metrics = metrics
        self._clock = clock
        self._handlers: Dict[str, Handler] = {
            "Create": self._handle_create_or_update,
            "Update": self._handle_create_or_update,
            "Delete": self._handle_delete,
            "Remove": self._handle_remove,
            "Add": self._handle_add,
            "Like": self._handle_vote,
            "Dislike": self._handle_vote,
            "Undo": self._handle_undo,
            "Follow": self._handle_follow,
            "Accept": self._handle_accept,
            "Block": self._handle_block,
            "Lock": self._handle_lock,
        }
        self._undo_handlers: Dict[str, UndoHandler] = {
            "Like": self._undo_vote,
            "Dislike": self._undo_vote,
            "Delete": self._undo_delete,
            "Remove": self._undo_remove,
            "Follow": self._undo_follow,
            "Block": self._undo_block,
            "Lock": self._undo_lock,
        }

    def set_outbox(self, outbox: "Outbox") -> None:
        self._outbox = outbox

    async def receive(
        self, request: InboundRequest, recipient: Optional[str] = None
    ) -> InboxOutcome:
        """Processes one inbound delivery.

        Args:
            request: The signed HTTP request.
            recipient: Id of the local actor whose inbox was addressed, or None
                for the shared inbox.

        Returns:
            The outcome; rejections are reported, never raised.
        """
        activity: Optional[Activity] = None
        try:
            activity, raw = self._parse(request)
            if self._metrics is not None:
                self._metrics.inbound_received_total.labels(activity_type=activity.type).inc()
            self._check_recipient(recipient)
            budget = self._resolver.new_budget()
            signer = await self._verify_signature(request, budget)
            self._verify_domains(activity, signer)
            if self._repository.activity_exists(activity.id):
                logger.debug("Activity %s was already applied", activity.id)
                return InboxOutcome(activity_id=activity.id, activity_type=activity.type, replay=True)
            self._check_actor(signer)
            context = _Context(activity=activity, raw=raw, actor=signer, budget=budget)
            if activity.type == "Announce":
                applied = await self._handle_announce(context)
            else:
                applied = await self._apply(context)
        except InboxRejection as exc:
            return self._reject(exc, activity)
        except ResolverError as exc:
            return self._reject(
                MalformedActivity(f"could not resolve a referenced object: {exc}"), activity
            )

        self._record(activity, raw)
        await self._publish(applied, raw, origin_domain=signer.domain)
        logger.info("Applied %s %s from %s", activity.type, activity.id, signer.ap_id)
        return InboxOutcome(activity_id=activity.id, activity_type=activity.type)

    # Verification stages ----------------------------------------------------

    def _parse(self, request: InboundRequest) -> Tuple[Activity, Dict[str, Any]]:
        try:
            raw = request.json()
            activity = Activity.model_validate(raw)
        except (ActivityParseError, ValidationError) as exc:
            self._repository.quarantine_activity(request.body, str(exc))
            raise MalformedActivity(f"invalid activity: {exc}") from exc
        return activity, raw

    def _check_recipient(self, recipient: Optional[str]) -> None:
        if recipient is None:
            return
        actor = self._repository.get_actor(recipient)
        if actor is None or not actor.local:
            raise UnknownRecipient(f"{recipient} is not a local actor")

    async def _verify_signature(
        self, request: InboundRequest, budget: RecursionBudget
    ) -> CachedActor:
        header = request.header("signature")
        if not header:
            raise InvalidSignature("request is not signed")
        try:
            parsed = parse_signature_header(header)
        except SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc

        owner = parsed.key_owner
        try:
            self._policy.check_url(owner)
        except DomainPolicyError as exc:
            raise Forbidden("instance_blocked", str(exc)) from exc
        try:
            signer = await self._resolver.resolve_actor(owner, budget)
        except ResolverError as exc:
            raise InvalidSignature(f"cannot resolve key owner {owner}: {exc}") from exc

        try:
            verify_request(
                method=request.method,
                path=request.path,
                headers=request.headers,
                body=request.body,
                public_key_hex=signer.public_key,
                max_age_seconds=self._settings.signature_max_age_seconds,
                now=self._clock(),
            )
        except SignatureVerificationError as exc:
            logger.warning(
                "Signature verification failed for %s: %s", owner, exc
            )  # ALERT: Federation signature failure
            raise InvalidSignature(str(exc)) from exc
        return signer

    def _verify_domains(self, activity: Activity, signer: CachedActor) -> None:
        """The activity, its actor and any embedded object must live on the signer's instance."""
        origin = signer.domain
        if url_domain(activity.id) != origin:
            raise DomainMismatch(f"activity {activity.id} was delivered by {origin}")
        if url_domain(activity.actor) != origin:
            raise DomainMismatch(f"actor {activity.actor} was delivered by {origin}")
        if activity.actor != signer.ap_id:
            raise InvalidSignature(f"activity by {activity.actor} signed by {signer.ap_id}")
        if activity.type in ("Create", "Update"):
            object_id = activity.object_id
            if object_id is None or url_domain(object_id) != origin:
                raise DomainMismatch(f"object {object_id} was delivered by {origin}")
        if activity.type == "Announce":
            self._verify_inner_domains(self._inner_activity(activity))

    def _verify_inner_domains(self, inner: Activity) -> None:
        inner_origin = url_domain(inner.actor)
        if self._policy.is_local(inner.actor) or self._policy.is_local(inner.id):
            raise DomainMismatch(f"announced activity {inner.id} claims a local actor")
        if url_domain(inner.id) != inner_origin:
            raise DomainMismatch(f"announced activity {inner.id} is not by {inner.actor}")
        if inner.type in ("Create", "Update"):
            object_id = inner.object_id
            if object_id is None or url_domain(object_id) != inner_origin:
                raise DomainMismatch(f"announced object {object_id} is not by {inner.actor}")

    def _check_actor(self, actor: CachedActor) -> None:
        if actor.banned:
            raise Forbidden("actor_banned", f"{actor.ap_id} is banned")

    def _check_community_access(self, community: CachedActor, actor: CachedActor) -> None:
        self._check_solicited(community)
        if self._repository.is_banned_from_community(community.ap_id, actor.ap_id):
            raise Forbidden("community_ban", f"{actor.ap_id} is banned from {community.ap_id}")
        if community.visibility == "private" and not (
            self._is_moderator(community, actor)
            or self._is_accepted_follower(community, actor)
        ):
            raise Forbidden(
                "private_community", f"{actor.ap_id} does not follow {community.ap_id}"
            )

    def _check_solicited(self, community: CachedActor) -> None:
        """Remote communities are only accepted from when a local actor follows them."""
        if community.local:
            return
        if not self._repository.has_accepted_follower_on(community.ap_id, self._settings.domain):
            raise Forbidden("unsolicited", f"nobody here follows {community.ap_id}")

    def _check_content(self, obj: Dict[str, Any]) -> None:
        texts = [obj.get(key) for key in ("name", "content", "summary")]
        matches = self._content_filter.violations(
            text for text in texts if isinstance(text, str)
        )
        if matches:
            raise Forbidden("content_filter", f"{obj.get('id')} matches the content filter")

    def _is_moderator(self, community: CachedActor, actor: CachedActor) -> bool:
        return actor.ap_id == community.ap_id or self._repository.is_moderator(
            community.ap_id, actor.ap_id
        )

    def _is_accepted_follower(self, community: CachedActor, actor: CachedActor) -> bool:
        follow = self._repository.get_follow(community.ap_id, actor.ap_id)
        return follow is not None and not follow.pending

    # Apply ------------------------------------------------------------------

    async def _apply(self, context: _Context) -> _Applied:
        handler = self._handlers.get(context.activity.type)
        if handler is None:
            raise MalformedActivity(f"unsupported activity type {context.activity.type!r}")
        return await handler(context)

    async def _handle_create_or_update(self, context: _Context) -> _Applied:
        activity = context.activity
        obj = activity.object
        if not isinstance(obj, dict):
            raise MalformedActivity(f"{activity.type} must embed its object")
        obj_type = obj.get("type")
        if obj_type in ACTOR_TYPES:
            if activity.type != "Update":
                raise MalformedActivity("actors can only be updated")
            return await self._update_actor(context, obj)
        if obj_type not in CONTENT_TYPES:
            raise MalformedActivity(f"unsupported object type {obj_type!r}")

        if _first_ref(obj.get("attributedTo")) != context.actor.ap_id:
            raise Forbidden("not_creator", f"{obj.get('id')} is not attributed to {context.actor.ap_id}")
        existing = self._repository.get_object(obj["id"])
        if existing is not None and existing.creator_ap_id != context.actor.ap_id:
            raise Forbidden("not_creator", f"{obj['id']} belongs to {existing.creator_ap_id}")

        community: Optional[CachedActor] = None
        if obj_type in PAGE_TYPES or obj_type in NOTE_TYPES:
            community = await self._content_community(context, obj)
            self._check_community_access(community, context.actor)
        self._check_content(obj)

        row = await self._resolver.upsert_from_document(obj, context.budget)
        verb = "created" if activity.type == "Create" else "updated"
        return _Applied(
            changes=[(row, f"{row.kind}.{verb}")],
            relay_via=community if community is not None and community.local else None,
        )

    async def _content_community(self, context: _Context, obj: Dict[str, Any]) -> CachedActor:
        """Community of an inbound post or comment; comments on locked posts are refused."""
        try:
            if obj.get("type") in PAGE_TYPES:
                page = PageDocument.model_validate(obj)
                community_ref = page.community_ref()
                if community_ref is None:
                    raise MalformedActivity(f"post {page.id} is not addressed to a community")
                return await self._resolver.resolve_community(community_ref, context.budget)
            note = NoteDocument.model_validate(obj)
        except ValidationError as exc:
            raise MalformedActivity(f"invalid {obj.get('type')} object: {exc}") from exc

        parent = await self._resolver.resolve_object(note.in_reply_to, context.budget)
        post = parent
        if parent.kind == "comment" and parent.post_ap_id:
            post = await self._resolver.resolve_object(parent.post_ap_id, context.budget, kind="post")
        if post.kind != "post" or not post.community_ap_id:
            raise MalformedActivity(f"comment {note.id} does not reply to a post or comment")
        if post.locked and context.activity.type == "Create":
            raise Forbidden("post_locked", f"{post.ap_id} is locked")
        return await self._resolver.resolve_community(post.community_ap_id, context.budget)

    async def _update_actor(self, context: _Context, obj: Dict[str, Any]) -> _Applied:
        target = obj.get("id")
        if target != context.actor.ap_id and not self._repository.is_moderator(
            target, context.actor.ap_id
        ):
            raise Forbidden("not_moderator", f"{context.actor.ap_id} cannot update {target}")
        self._check_content(obj)
        row = await self._resolver.upsert_from_document(obj, context.budget)
        return _Applied(changes=[(row, f"{row.kind}.updated")])

    def _content_change_flag(self, obj: CachedObject, actor: CachedActor) -> str:
        """Creators delete their own content; moderators of its community remove it."""
        if obj.creator_ap_id == actor.ap_id:
            return "deleted"
        if obj.community_ap_id and self._repository.is_moderator(obj.community_ap_id, actor.ap_id):
            return "removed"
        raise Forbidden("not_creator", f"{actor.ap_id} cannot delete {obj.ap_id}")

    def _local_community_of(self, obj: Optional[CachedObject]) -> Optional[CachedActor]:
        if obj is None or not obj.community_ap_id:
            return None
        community = self._repository.get_actor(obj.community_ap_id)
        return community if community is not None and community.local else None

    async def _set_deleted(self, context: _Context, target: Optional[str], deleted: bool) -> _Applied:
        if target is None:
            raise MalformedActivity("delete has no object")
        suffix = "deleted" if deleted else "restored"
        if target == context.actor.ap_id:
            actor = self._repository.update_actor_flags(target, deleted=deleted)
            return _Applied(changes=[(actor, f"{context.actor.kind}.{suffix}")])
        obj = self._repository.get_object(target)
        if obj is None:
            logger.debug("Ignoring delete of unknown object %s", target)
            return _Applied()
        flag = self._content_change_flag(obj, context.actor)
        row = self._repository.update_object_flags(obj.ap_id, **{flag: deleted})
        kind = f"{obj.kind}.{flag if deleted else suffix}"
        return _Applied(changes=[(row, kind)], relay_via=self._local_community_of(obj))

    async def _handle_delete(self, context: _Context) -> _Applied:
        return await self._set_deleted(context, context.activity.object_id, True)

    async def _set_removed(self, context: _Context, target: Optional[str], removed: bool) -> _Applied:
        obj = self._repository.get_object(target) if target else None
        if obj is None:
            logger.debug("Ignoring removal of unknown object %s", target)
            return _Applied()
        if not obj.community_ap_id or not self._repository.is_moderator(
            obj.community_ap_id, context.actor.ap_id
        ):
            raise Forbidden("not_moderator", f"{context.actor.ap_id} cannot remove {obj.ap_id}")
        row = self._repository.update_object_flags(obj.ap_id, removed=removed)
        kind = f"{obj.kind}.{'removed' if removed else 'restored'}"
        return _Applied(changes=[(row, kind)], relay_via=self._local_community_of(obj))

    async def _set_locked(self, context: _Context, target: Optional[str], locked: bool) -> _Applied:
        if target is None:
            raise MalformedActivity("lock has no object")
        post = await self._resolver.resolve_object(target, context.budget)
        if post.kind != "post" or not post.community_ap_id:
            raise MalformedActivity(f"cannot lock {post.ap_id}")
        community = await self._resolver.resolve_community(post.community_ap_id, context.budget)
        if not self._is_moderator(community, context.actor):
            raise Forbidden("not_moderator", f"{context.actor.ap_id} cannot lock {post.ap_id}")
        row = self._repository.update_object_flags(post.ap_id, locked=locked)
        return _Applied(
            changes=[(row, "post.locked" if locked else "post.unlocked")],
            relay_via=community if community.local else None,
        )

    async def _handle_lock(self, context: _Context) -> _Applied:
        return await self._set_locked(context, context.activity.object_id, True)

    async def _handle_remove(self, context: _Context) -> _Applied:
        target = context.activity.target
        if target and target.endswith(MODERATORS_SUFFIX):
            return await self._change_moderator(context, context.activity, added=False)
        return await self._set_removed(context, context.activity.object_id, True)

    async def _handle_add(self, context: _Context) -> _Applied:
        target = context.activity.target
        if not target or not target.endswith(MODERATORS_SUFFIX):
            raise MalformedActivity("add must target a moderators collection")
        return await self._change_moderator(context, context.activity, added=True)

    async def _change_moderator(self, context: _Context, activity: Activity, added: bool) -> _Applied:
        community_ref = activity.target[: -len(MODERATORS_SUFFIX)]
        community = await self._resolver.resolve_community(community_ref, context.budget)
        if not self._is_moderator(community, context.actor):
            raise Forbidden("not_moderator", f"{context.actor.ap_id} is not a moderator of {community.ap_id}")
        if activity.object_id is None:
            raise MalformedActivity("moderator change has no person")
        person = await self._resolver.resolve_person(activity.object_id, context.budget)
        self._repository.set_moderator(community.ap_id, person.ap_id, active=added)
        kind = "community.moderator_added" if added else "community.moderator_removed"
        return _Applied(
            changes=[(community, kind)],
            relay_via=community if community.local else None,
        )

    async def _handle_vote(self, context: _Context) -> _Applied:
        if context.activity.object_id is None:
            raise MalformedActivity("vote has no object")
        obj = await self._resolver.resolve_object(context.activity.object_id, context.budget)
        if obj.kind not in ("post", "comment") or not obj.community_ap_id:
            raise MalformedActivity(f"cannot vote on {obj.ap_id}")
        community = await self._resolver.resolve_community(obj.community_ap_id, context.budget)
        self._check_community_access(community, context.actor)
        score = 1 if context.activity.type == "Like" else -1
        self._repository.upsert_vote(obj.ap_id, context.actor.ap_id, score)
        return _Applied(
            changes=[(obj, f"{obj.kind}.voted")],
            relay_via=community if community.local else None,
        )

    async def _handle_follow(self, context: _Context) -> _Applied:
        target_ref = context.activity.object_id
        target = self._repository.get_actor(target_ref) if target_ref else None
        if target is None or not target.local:
            raise UnknownRecipient(f"{target_ref} is not a local actor")
        if target.kind == "community" and self._repository.is_banned_from_community(
            target.ap_id, context.actor.ap_id
        ):
            raise Forbidden("community_ban", f"{context.actor.ap_id} is banned from {target.ap_id}")

        existing = self._repository.get_follow(target.ap_id, context.actor.ap_id)
        pending = target.kind == "community" and target.visibility == "private"
        if existing is not None and not existing.pending:
            pending = False
        follow = self._repository.upsert_follow(target.ap_id, context.actor.ap_id, pending=pending)
        if not pending and self._outbox is not None:
            await self._outbox.publish(
                FollowAccepted(
                    target_ap_id=target.ap_id,
                    follower_ap_id=context.actor.ap_id,
                    follow_id=context.activity.id,
                )
            )
        return _Applied(changes=[(follow, "follow.pending" if pending else "follow.accepted")])

    async def _handle_accept(self, context: _Context) -> _Applied:
        follow_activity = self._referenced_activity(context.activity)
        if follow_activity.type != "Follow":
            raise MalformedActivity(f"cannot accept a {follow_activity.type}")
        if follow_activity.object_id != context.actor.ap_id:
            raise Forbidden("not_creator", f"{context.actor.ap_id} cannot accept a follow of {follow_activity.object_id}")
        if self._repository.get_follow(context.actor.ap_id, follow_activity.actor) is None:
            raise MalformedActivity(f"no follow of {context.actor.ap_id} by {follow_activity.actor}")
        follow = self._repository.upsert_follow(
            context.actor.ap_id, follow_activity.actor, pending=False
        )
        return _Applied(changes=[(follow, "follow.accepted")])

    async def _handle_block(self, context: _Context) -> _Applied:
        return await self._apply_block(context, context.activity, banned=True)

    async def _apply_block(self, context: _Context, block: Activity, banned: bool) -> _Applied:
        if not block.target or block.object_id is None:
            raise MalformedActivity("block needs an object and a target")
        target = await self._resolver.resolve_actor(block.target, context.budget)
        person = await self._resolver.resolve_person(block.object_id, context.budget)
        if target.kind == "community":
            if not self._is_moderator(target, context.actor):
                raise Forbidden("not_moderator", f"{context.actor.ap_id} is not a moderator of {target.ap_id}")
            self._repository.set_community_ban(target.ap_id, person.ap_id, banned=banned)
            kind = "community.ban_added" if banned else "community.ban_removed"
            return _Applied(changes=[(person, kind)], relay_via=target if target.local else None)
        if target.kind == "site":
            # Instances only ban their own users federation-wide.
            if target.domain != context.actor.domain or person.domain != context.actor.domain:
                raise Forbidden("not_moderator", f"{context.actor.ap_id} cannot ban {person.ap_id}")
            row = self._repository.update_actor_flags(person.ap_id, banned=banned)
            return _Applied(changes=[(row, "person.banned" if banned else "person.unbanned")])
        raise MalformedActivity(f"cannot block from a {target.kind}")

    # Undo -------------------------------------------------------------------

    async def _handle_undo(self, context: _Context) -> _Applied:
        undone = self._referenced_activity(context.activity)
        if undone.actor != context.actor.ap_id:
            raise Forbidden("not_creator", f"{context.actor.ap_id} cannot undo {undone.id}")
        handler = self._undo_handlers.get(undone.type)
        if handler is None:
            raise MalformedActivity(f"cannot undo a {undone.type}")
        return await handler(context, undone)

    async def _undo_vote(self, context: _Context, undone: Activity) -> _Applied:
        obj = self._repository.get_object(undone.object_id) if undone.object_id else None
        if obj is None:
            return _Applied()
        self._repository.remove_vote(obj.ap_id, context.actor.ap_id)
        return _Applied(
            changes=[(obj, f"{obj.kind}.vote_removed")],
            relay_via=self._local_community_of(obj),
        )

    async def _undo_delete(self, context: _Context, undone: Activity) -> _Applied:
        return await self._set_deleted(context, undone.object_id, False)

    async def _undo_remove(self, context: _Context, undone: Activity) -> _Applied:
        if undone.target and undone.target.endswith(MODERATORS_SUFFIX):
            return await self._change_moderator(context, undone, added=True)
        return await self._set_removed(context, undone.object_id, False)

    async def _undo_follow(self, context: _Context, undone: Activity) -> _Applied:
        if undone.object_id is None:
            raise MalformedActivity("follow has no object")
        self._repository.remove_follow(undone.object_id, context.actor.ap_id)
        target = self._repository.get_actor(undone.object_id)
        return _Applied(changes=[(target, "follow.removed")])

    async def _undo_block(self, context: _Context, undone: Activity) -> _Applied:
        return await self._apply_block(context, undone, banned=False)

    async def _undo_lock(self, context: _Context, undone: Activity) -> _Applied:
        return await self._set_locked(context, undone.object_id, False)

    def _referenced_activity(self, activity: Activity) -> Activity:
        """The activity an Undo or Accept refers to, embedded or from the activity log."""
        inner = activity.object
        if isinstance(inner, str):
            record = self._repository.get_activity(inner)
            if record is None:
                raise MalformedActivity(f"unknown activity {inner}")
            inner = json.loads(record.data)
        try:
            return Activity.model_validate(inner)
        except ValidationError as exc:
            raise MalformedActivity(f"invalid embedded activity: {exc}") from exc

    # Announce ---------------------------------------------------------------

    def _inner_activity(self, activity: Activity) -> Activity:
        if not isinstance(activity.object, dict):
            raise MalformedActivity("announce must embed the announced activity")
        try:
            return Activity.model_validate(activity.object)
        except ValidationError as exc:
            raise MalformedActivity(f"invalid announced activity: {exc}") from exc

    async def _fetch_announced(
        self, inner: Activity, budget: RecursionBudget
    ) -> Tuple[Activity, Dict[str, Any]]:
        """Dereferences an announced activity from its own instance."""
        try:
            document = await self._resolver.fetch_document(inner.id, budget)
            fetched = Activity.model_validate(document)
        except ResolverError as exc:
            raise DomainMismatch(f"announced activity {inner.id} could not be verified: {exc}") from exc
        except ValidationError as exc:
            raise MalformedActivity(f"invalid announced activity {inner.id}: {exc}") from exc
        if (fetched.id, fetched.actor, fetched.type) != (inner.id, inner.actor, inner.type):
            raise DomainMismatch(f"announced activity {inner.id} does not match its origin")
        self._verify_inner_domains(fetched)
        return fetched, document

    async def _handle_announce(self, context: _Context) -> _Applied:
        if context.actor.kind != "community":
            raise MalformedActivity(f"{context.actor.ap_id} is not a community")
        self._check_solicited(context.actor)
        inner = self._inner_activity(context.activity)
        if inner.type not in ANNOUNCEABLE:
            raise MalformedActivity(f"a {inner.type} cannot be announced")
        if self._repository.activity_exists(inner.id):
            logger.debug("Announced activity %s was already applied", inner.id)
            return _Applied()
        try:
            self._policy.check_url(inner.actor)
        except DomainPolicyError as exc:
            raise Forbidden("instance_blocked", str(exc)) from exc

        raw_inner = context.activity.object
        if url_domain(inner.actor) != context.actor.domain:
            # Only the community's instance is vouched for by the signature.
            inner, raw_inner = await self._fetch_announced(inner, context.budget)
        inner_actor = await self._resolver.resolve_actor(inner.actor, context.budget)
        self._check_actor(inner_actor)

        inner_context = _Context(
            activity=inner,
            raw=raw_inner,
            actor=inner_actor,
            budget=context.budget,
            announced_by=context.actor,
        )
        applied = await self._apply(inner_context)
        self._record(inner, inner_context.raw)
        # The announcing community already relays to its followers.
        applied.relay_via = None
        return applied

    # Bookkeeping ------------------------------------------------------------

    def _record(self, activity: Activity, raw: Dict[str, Any]) -> None:
        try:
            self._repository.record_activity(
                ap_id=activity.id,
                kind=activity.type,
                actor_ap_id=activity.actor,
                data=raw,
                local=False,
            )
        except PersistenceFailure as exc:
            logger.error("Could not record inbound activity %s: %s", activity.id, exc)

    async def _publish(self, applied: _Applied, raw: Dict[str, Any], origin_domain: str) -> None:
        for obj, kind in applied.changes:
            if obj is None:
                continue
            if self._metrics is not None:
                self._metrics.activities_applied_total.labels(kind=kind).inc()
            if self._event_bus is not None:
                await self._event_bus.on_applied(obj, kind)
        if applied.relay_via is not None and self._outbox is not None:
            await self._outbox.relay(applied.relay_via, raw, origin_domain)

    def _reject(self, exc: InboxRejection, activity: Optional[Activity]) -> InboxOutcome:
        activity_id = activity.id if activity is not None else None
        logger.warning(
            "Rejected inbound activity %s: %s (%s)",
            activity_id or "<unparsed>",
            exc.reason.value,
            exc,
        )
        if self._metrics is not None:
            self._metrics.inbound_rejected_total.labels(
                reason=exc.sub_reason or exc.reason.value
            ).inc()
        return InboxOutcome(
            activity_id=activity_id,
            activity_type=activity.type if activity is not None else None,
            rejection=exc.reason,
            sub_reason=exc.sub_reason,
            detail=str(exc),
        )


__all__ = [
    "DomainMismatch",
    "Forbidden",
    "InboxOutcome",
    "InboxRejection",
    "InboxService",
    "InvalidSignature",
    "MalformedActivity",
    "Rejection",
    "UnknownRecipient",
]
