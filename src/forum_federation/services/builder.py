from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import CachedActor, CachedObject
from forum_federation.db.repository import FederationRepository
from forum_federation.models.events import (
    DOMAIN_EVENTS,
    CommentCreated,
    CommentDeleted,
    CommentUpdated,
    CommunityBanChanged,
    CommunityTransferred,
    CommunityUpdated,
    ContentRemoved,
    DomainEvent,
    FeedUpdated,
    FollowAccepted,
    FollowRequested,
    ModeratorChanged,
    PersonUpdated,
    PostCreated,
    PostDeleted,
    PostLocked,
    PostUpdated,
    PrivateMessageCreated,
    PrivateMessageDeleted,
    PrivateMessageUpdated,
    SiteBanChanged,
    VoteCast,
)
from forum_federation.models.outgoing import Audience, OutgoingMessage
from forum_federation.schemas import PUBLIC
from forum_federation.services.mentions import MentionResolver, ResolvedMention
from forum_federation.services.resolver import RecursionBudget, Resolver, ResolverError
from forum_federation.services.translator import ActivityPubTranslator

logger = logging.getLogger(__name__)

Handler = Callable[[Any, RecursionBudget], Awaitable[List[OutgoingMessage]]]

VOTE_KINDS = {1: "Like", -1: "Dislike"}


class BuildError(Exception):
    """A domain event could not be turned into outgoing messages."""


def preferred_inbox(actor: CachedActor) -> str:
    return actor.shared_inbox_url or actor.inbox_url


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(item for item in items if item))


class MessageBuilder:
    """Builds signed-ready outgoing activities and their audiences from domain events.

    Building only reads storage (through the resolver, which may fill its
    cache); nothing is queued or sent here.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        resolver: Resolver,
        mentions: MentionResolver,
        translator: Optional[ActivityPubTranslator] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.resolver = resolver
        self.mentions = mentions
        self.translator = translator or resolver.translator
        self._handlers: Dict[type, Handler] = {
            PostCreated: self._post_created,
            PostUpdated: self._post_updated,
            PostDeleted: self._post_deleted,
            CommentCreated: self._comment_created,
            CommentUpdated: self._comment_updated,
            CommentDeleted: self._comment_deleted,
            VoteCast: self._vote_cast,
            ContentRemoved: self._content_removed,
            PostLocked: self._post_locked,
            CommunityBanChanged: self._community_ban_changed,
            ModeratorChanged: self._moderator_changed,
            CommunityTransferred: self._community_transferred,
            CommunityUpdated: self._community_updated,
            PersonUpdated: self._person_updated,
            SiteBanChanged: self._site_ban_changed,
            FeedUpdated: self._feed_updated,
            PrivateMessageCreated: self._private_message_created,
            PrivateMessageUpdated: self._private_message_updated,
            PrivateMessageDeleted: self._private_message_deleted,
            FollowRequested: self._follow_requested,
            FollowAccepted: self._follow_accepted,
        }
        missing = [event.__name__ for event in DOMAIN_EVENTS if event not in self._handlers]
        if missing:
            raise RuntimeError(f"no message builder for: {', '.join(missing)}")

    async def build(self, event: DomainEvent) -> List[OutgoingMessage]:
        """Builds the outgoing messages for one domain event.

        Args:
            event: A domain event emitted by the local CRUD layer.

        Returns:
            The messages to queue; empty when the event does not federate.

        Raises:
            BuildError: If the event is malformed or a referenced row cannot be resolved.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise BuildError(f"unsupported domain event {type(event).__name__}")
        budget = self.resolver.new_budget()
        try:
            messages = await handler(event, budget)
        except ResolverError as exc:
            raise BuildError(f"could not build {type(event).__name__}: {exc}") from exc
        logger.debug("Built %d message(s) for %s", len(messages), type(event).__name__)
        return messages

    def build_announce(
        self, community: CachedActor, activity: Dict[str, Any], origin_domain: str
    ) -> OutgoingMessage:
        """Wraps an applied inbound activity so a local community relays it to its followers.

        The instance the activity came from is excluded: it already has it.
        """
        if not community.local:
            raise BuildError(f"only local communities announce, not {community.ap_id}")
        payload = self.translator.activity(
            "Announce",
            community.ap_id,
            activity,
            to=[PUBLIC],
            cc=_unique([community.followers_url]),
            audience=community.ap_id,
        )
        inner = activity.get("object")
        object_ap_id = inner.get("id") if isinstance(inner, dict) else inner
        return self._message(
            payload,
            object_ap_id=object_ap_id if isinstance(object_ap_id, str) else activity["id"],
            audience=Audience(
                followers_of_community=community.ap_id,
                exclude_domains=frozenset({origin_domain}),
            ),
        )

    # Shared helpers ---------------------------------------------------------

    async def _local_actor(
        self, ref: str, budget: RecursionBudget, kind: Optional[str] = None
    ) -> CachedActor:
        actor = await self.resolver.resolve_actor(ref, budget, kind=kind)
        if not actor.local or not actor.private_key:
            raise BuildError(f"{ref} is not a local actor with a signing key")
        return actor

    async def _content_community(self, obj: CachedObject, budget: RecursionBudget) -> CachedActor:
        if not obj.community_ap_id:
            raise BuildError(f"{obj.ap_id} does not belong to a community")
        return await self.resolver.resolve_community(obj.community_ap_id, budget)

    def _message(
        self,
        payload: Dict[str, Any],
        *,
        object_ap_id: str,
        audience: Audience,
        cc: Sequence[str] = (),
        sensitive: bool = False,
    ) -> OutgoingMessage:
        return OutgoingMessage(
            id=payload["id"],
            kind=payload["type"],
            actor_ap_id=payload["actor"],
            object_ap_id=object_ap_id,
            payload=payload,
            cc=tuple(cc),
            audience=audience,
            sensitive=sensitive,
        )

    @staticmethod
    def _community_audience(
        community: CachedActor, extra_inboxes: Iterable[str] = ()
    ) -> Audience:
        return Audience(
            inboxes=tuple(_unique([community.inbox_url, *extra_inboxes])),
            followers_of_community=community.ap_id,
        )

    def _with_undo(
        self,
        activity: Dict[str, Any],
        undo: bool,
        *,
        to: Sequence[str],
        cc: Sequence[str] = (),
        audience: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not undo:
            return activity
        return self.translator.activity(
            "Undo", activity["actor"], activity, to=to, cc=cc, audience=audience
        )

    # Posts and comments -----------------------------------------------------

    async def _post_created(self, event: PostCreated, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._post_message("Create", event.actor_ap_id, event.post_ap_id, budget)

    async def _post_updated(self, event: PostUpdated, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._post_message("Update", event.actor_ap_id, event.post_ap_id, budget)

    async def _post_message(
        self, kind: str, actor_ref: str, post_ref: str, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        actor = await self._local_actor(actor_ref, budget)
        post = await self.resolver.resolve_object(post_ref, budget, kind="post")
        community = await self._content_community(post, budget)
        mentions = await self.mentions.resolve(post.content, budget)

        cc = _unique(mention.actor.ap_id for mention in mentions)
        page = self.translator.post_document(post)
        page["cc"] = cc
        page["tag"] = self._mention_tags(mentions)
        payload = self.translator.activity(
            kind, actor.ap_id, page, to=[community.ap_id, PUBLIC], cc=cc, audience=community.ap_id
        )
        audience = self._community_audience(
            community, (preferred_inbox(mention.actor) for mention in mentions)
        )
        return [self._message(payload, object_ap_id=post.ap_id, audience=audience, cc=cc)]

    async def _comment_created(self, event: CommentCreated, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._comment_message("Create", event.actor_ap_id, event.comment_ap_id, budget)

    async def _comment_updated(self, event: CommentUpdated, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._comment_message("Update", event.actor_ap_id, event.comment_ap_id, budget)

    async def _comment_message(
        self, kind: str, actor_ref: str, comment_ref: str, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        actor = await self._local_actor(actor_ref, budget)
        comment = await self.resolver.resolve_object(comment_ref, budget, kind="comment")
        if not comment.post_ap_id:
            raise BuildError(f"comment {comment.ap_id} has no post")
        post = await self.resolver.resolve_object(comment.post_ap_id, budget, kind="post")
        community = await self._content_community(post, budget)
        parent = post
        if comment.parent_ap_id:
            parent = await self.resolver.resolve_object(comment.parent_ap_id, budget, kind="comment")
        parent_creator = await self.resolver.resolve_actor(parent.creator_ap_id, budget)
        mentions = await self.mentions.resolve(comment.content, budget)

        cc = [community.ap_id]
        inboxes = [preferred_inbox(mention.actor) for mention in mentions]
        cc.extend(mention.actor.ap_id for mention in mentions)
        if not parent_creator.local:
            cc.append(parent_creator.ap_id)
            inboxes.append(preferred_inbox(parent_creator))
        cc = _unique(cc)

        note = self.translator.comment_document(
            comment,
            cc=cc,
            mentions=[(mention.actor.ap_id, mention.handle) for mention in mentions],
        )
        payload = self.translator.activity(
            kind, actor.ap_id, note, to=[PUBLIC], cc=cc, audience=community.ap_id
        )
        audience = self._community_audience(community, inboxes)
        return [self._message(payload, object_ap_id=comment.ap_id, audience=audience, cc=cc)]

    async def _post_deleted(self, event: PostDeleted, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._delete_message(
            event.actor_ap_id, event.post_ap_id, "post", event.restored, budget
        )

    async def _comment_deleted(self, event: CommentDeleted, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._delete_message(
            event.actor_ap_id, event.comment_ap_id, "comment", event.restored, budget
        )

    async def _delete_message(
        self, actor_ref: str, object_ref: str, kind: str, restored: bool, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        actor = await self._local_actor(actor_ref, budget)
        obj = await self.resolver.resolve_object(object_ref, budget, kind=kind)
        community = await self._content_community(obj, budget)
        to = [community.ap_id, PUBLIC]
        delete = self.translator.activity(
            "Delete", actor.ap_id, obj.ap_id, to=to, cc=[community.ap_id], audience=community.ap_id
        )
        payload = self._with_undo(
            delete, restored, to=to, cc=[community.ap_id], audience=community.ap_id
        )
        return [
            self._message(
                payload,
                object_ap_id=obj.ap_id,
                audience=self._community_audience(community),
                cc=[community.ap_id],
            )
        ]

    async def _vote_cast(self, event: VoteCast, budget: RecursionBudget) -> List[OutgoingMessage]:
        if event.score not in (-1, 0, 1):
            raise BuildError(f"vote score must be -1, 0 or 1, got {event.score}")
        actor = await self._local_actor(event.actor_ap_id, budget, kind="person")
        obj = await self.resolver.resolve_object(event.object_ap_id, budget)
        if obj.kind not in ("post", "comment"):
            raise BuildError(f"cannot vote on a {obj.kind}")
        community = await self._content_community(obj, budget)
        to = [community.ap_id, PUBLIC]
        vote = self.translator.activity(
            VOTE_KINDS.get(event.score, "Like"),
            actor.ap_id,
            obj.ap_id,
            to=to,
            audience=community.ap_id,
        )
        payload = self._with_undo(vote, event.score == 0, to=to, audience=community.ap_id)
        return [
            self._message(
                payload, object_ap_id=obj.ap_id, audience=self._community_audience(community)
            )
        ]

    # Moderation -------------------------------------------------------------

    async def _content_removed(self, event: ContentRemoved, budget: RecursionBudget) -> List[OutgoingMessage]:
        moderator = await self._local_actor(event.moderator_ap_id, budget)
        obj = await self.resolver.resolve_object(event.object_ap_id, budget)
        community = await self._content_community(obj, budget)
        to = [community.ap_id, PUBLIC]
        extra = {"summary": event.reason} if event.reason else {}
        remove = self.translator.activity(
            "Remove",
            moderator.ap_id,
            obj.ap_id,
            to=to,
            cc=[community.ap_id],
            audience=community.ap_id,
            **extra,
        )
        payload = self._with_undo(
            remove, event.restored, to=to, cc=[community.ap_id], audience=community.ap_id
        )
        return [
            self._message(
                payload,
                object_ap_id=obj.ap_id,
                audience=self._community_audience(community),
                cc=[community.ap_id],
            )
        ]

    async def _post_locked(self, event: PostLocked, budget: RecursionBudget) -> List[OutgoingMessage]:
        moderator = await self._local_actor(event.moderator_ap_id, budget)
        post = await self.resolver.resolve_object(event.post_ap_id, budget, kind="post")
        community = await self._content_community(post, budget)
        to = [community.ap_id, PUBLIC]
        extra = {"summary": event.reason} if event.reason else {}
        lock = self.translator.activity(
            "Lock",
            moderator.ap_id,
            post.ap_id,
            to=to,
            cc=[community.ap_id],
            audience=community.ap_id,
            **extra,
        )
        payload = self._with_undo(
            lock, not event.locked, to=to, cc=[community.ap_id], audience=community.ap_id
        )
        return [
            self._message(
                payload,
                object_ap_id=post.ap_id,
                audience=self._community_audience(community),
                cc=[community.ap_id],
            )
        ]

    async def _community_ban_changed(
        self, event: CommunityBanChanged, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        moderator = await self._local_actor(event.moderator_ap_id, budget)
        community = await self.resolver.resolve_community(event.community_ap_id, budget)
        person = await self.resolver.resolve_person(event.person_ap_id, budget)
        to = [community.ap_id, PUBLIC]
        extra: Dict[str, Any] = {}
        if event.reason:
            extra["summary"] = event.reason
        if event.expires:
            extra["expires"] = self.translator.format_timestamp(event.expires)
        block = self.translator.activity(
            "Block",
            moderator.ap_id,
            person.ap_id,
            to=to,
            cc=[community.ap_id],
            target=community.ap_id,
            audience=community.ap_id,
            **extra,
        )
        payload = self._with_undo(
            block, not event.banned, to=to, cc=[community.ap_id], audience=community.ap_id
        )
        extra_inboxes = [] if person.local else [preferred_inbox(person)]
        return [
            self._message(
                payload,
                object_ap_id=person.ap_id,
                audience=self._community_audience(community, extra_inboxes),
                cc=[community.ap_id],
            )
        ]

    async def _moderator_changed(self, event: ModeratorChanged, budget: RecursionBudget) -> List[OutgoingMessage]:
        actor = await self._local_actor(event.actor_ap_id, budget)
        community = await self.resolver.resolve_community(event.community_ap_id, budget)
        person = await self.resolver.resolve_person(event.person_ap_id, budget)
        payload = self.translator.activity(
            "Add" if event.added else "Remove",
            actor.ap_id,
            person.ap_id,
            to=[PUBLIC],
            cc=[community.ap_id],
            target=f"{community.ap_id}/moderators",
            audience=community.ap_id,
        )
        return [
            self._message(
                payload,
                object_ap_id=community.ap_id,
                audience=self._community_audience(community),
                cc=[community.ap_id],
            )
        ]

    async def _community_transferred(
        self, event: CommunityTransferred, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        return await self._community_update(event.actor_ap_id, event.community_ap_id, budget)

    async def _community_updated(self, event: CommunityUpdated, budget: RecursionBudget) -> List[OutgoingMessage]:
        return await self._community_update(event.actor_ap_id, event.community_ap_id, budget)

    async def _community_update(
        self, actor_ref: str, community_ref: str, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        actor = await self._local_actor(actor_ref, budget)
        community = await self._local_actor(community_ref, budget, kind="community")
        group = self.translator.actor_document(
            community, moderators=self.repository.list_moderators(community.ap_id)
        )
        payload = self.translator.activity(
            "Update", actor.ap_id, group, to=[PUBLIC], cc=[community.ap_id], audience=community.ap_id
        )
        return [
            self._message(
                payload,
                object_ap_id=community.ap_id,
                audience=Audience(followers_of_community=community.ap_id),
                cc=[community.ap_id],
            )
        ]

    async def _person_updated(self, event: PersonUpdated, budget: RecursionBudget) -> List[OutgoingMessage]:
        person = await self._local_actor(event.person_ap_id, budget, kind="person")
        payload = self.translator.activity(
            "Update", person.ap_id, self.translator.actor_document(person), to=[PUBLIC]
        )
        return [
            self._message(
                payload,
                object_ap_id=person.ap_id,
                audience=Audience(all_instances=True, followers_of_person=person.ap_id),
            )
        ]

    async def _site_ban_changed(self, event: SiteBanChanged, budget: RecursionBudget) -> List[OutgoingMessage]:
        admin = await self._local_actor(event.admin_ap_id, budget)
        person = await self.resolver.resolve_person(event.person_ap_id, budget)
        site_ap_id = f"{self.settings.base_url}/"
        extra: Dict[str, Any] = {}
        if event.reason:
            extra["summary"] = event.reason
        if event.expires:
            extra["expires"] = self.translator.format_timestamp(event.expires)
        block = self.translator.activity(
            "Block", admin.ap_id, person.ap_id, to=[PUBLIC], target=site_ap_id, **extra
        )
        payload = self._with_undo(block, not event.banned, to=[PUBLIC])
        return [
            self._message(
                payload, object_ap_id=person.ap_id, audience=Audience(all_instances=True)
            )
        ]

    async def _feed_updated(self, event: FeedUpdated, budget: RecursionBudget) -> List[OutgoingMessage]:
        feed = await self._local_actor(event.feed_ap_id, budget, kind="feed")
        payload = self.translator.activity(
            "Update", feed.ap_id, self.translator.actor_document(feed), to=[PUBLIC]
        )
        return [
            self._message(
                payload, object_ap_id=feed.ap_id, audience=Audience(followers_of_feed=feed.ap_id)
            )
        ]

    # Private messages -------------------------------------------------------

    async def _private_message_created(
        self, event: PrivateMessageCreated, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        return await self._private_message("Create", event.actor_ap_id, event.message_ap_id, budget)

    async def _private_message_updated(
        self, event: PrivateMessageUpdated, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        return await self._private_message("Update", event.actor_ap_id, event.message_ap_id, budget)

    async def _private_message_deleted(
        self, event: PrivateMessageDeleted, budget: RecursionBudget
    ) -> List[OutgoingMessage]:
        return await self._private_message(
            "Delete", event.actor_ap_id, event.message_ap_id, budget, restored=event.restored
        )

    async def _private_message(
        self,
        kind: str,
        actor_ref: str,
        message_ref: str,
        budget: RecursionBudget,
        restored: bool = False,
    ) -> List[OutgoingMessage]:
        actor = await self._local_actor(actor_ref, budget, kind="person")
        message = await self.resolver.resolve_object(message_ref, budget, kind="private_message")
        if not message.recipient_ap_id:
            raise BuildError(f"private message {message.ap_id} has no recipient")
        recipient = await self.resolver.resolve_person(message.recipient_ap_id, budget)
        if recipient.local:
            return []

        to = [recipient.ap_id]
        if kind == "Delete":
            activity = self.translator.activity("Delete", actor.ap_id, message.ap_id, to=to)
            payload = self._with_undo(activity, restored, to=to)
        else:
            payload = self.translator.activity(
                kind, actor.ap_id, self.translator.private_message_document(message), to=to
            )
        return [
            self._message(
                payload,
                object_ap_id=message.ap_id,
                audience=Audience(inboxes=(preferred_inbox(recipient),)),
                sensitive=True,
            )
        ]

    # Follows ----------------------------------------------------------------

    async def _follow_requested(self, event: FollowRequested, budget: RecursionBudget) -> List[OutgoingMessage]:
        follower = await self._local_actor(event.follower_ap_id, budget)
        target = await self.resolver.resolve_actor(event.target_ap_id, budget)
        if target.local:
            return []
        follow = self.translator.activity(
            "Follow", follower.ap_id, target.ap_id, to=[target.ap_id]
        )
        payload = self._with_undo(follow, event.undo, to=[target.ap_id])
        return [
            self._message(
                payload,
                object_ap_id=target.ap_id,
                audience=Audience(inboxes=(target.inbox_url,)),
            )
        ]

    async def _follow_accepted(self, event: FollowAccepted, budget: RecursionBudget) -> List[OutgoingMessage]:
        target = await self._local_actor(event.target_ap_id, budget)
        follower = await self.resolver.resolve_actor(event.follower_ap_id, budget)
        if follower.local:
            return []
        follow = {
            "id": event.follow_id,
            "type": "Follow",
            "actor": follower.ap_id,
            "object": target.ap_id,
        }
        payload = self.translator.activity("Accept", target.ap_id, follow, to=[follower.ap_id])
        return [
            self._message(
                payload,
                object_ap_id=target.ap_id,
                audience=Audience(inboxes=(preferred_inbox(follower),)),
            )
        ]

    @staticmethod
    def _mention_tags(mentions: Sequence[ResolvedMention]) -> List[Dict[str, str]]:
        return [
            {"type": "Mention", "href": mention.actor.ap_id, "name": mention.handle}
            for mention in mentions
        ]


__all__ = ["BuildError", "MessageBuilder", "preferred_inbox"]
