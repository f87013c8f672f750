from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from forum_federation.core.policy import url_domain
from forum_federation.db.models import CachedActor, CachedObject
from forum_federation.schemas import (
    ACTIVITY_CONTEXT,
    PUBLIC,
    ActorDocument,
    ChatMessageDocument,
    NoteDocument,
    PageDocument,
)

ACTOR_KIND_BY_TYPE = {
    "Person": "person",
    "Group": "community",
    "Application": "site",
    "Service": "site",
    "Feed": "feed",
}
ACTOR_TYPE_BY_KIND = {
    "person": "Person",
    "community": "Group",
    "site": "Application",
    "feed": "Feed",
}
OBJECT_TYPE_BY_KIND = {
    "post": "Page",
    "comment": "Note",
    "private_message": "ChatMessage",
}


@dataclass
class ActivityPubTranslator:
    """Translate cached rows to ActivityStreams documents and back."""

    base_url: str

    def new_activity_id(self, kind: str) -> str:
        return f"{self.base_url}/activities/{kind.lower()}/{uuid.uuid4()}"

    # Outgoing documents ------------------------------------------------------

    def actor_document(
        self, actor: CachedActor, moderators: Sequence[str] = ()
    ) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": actor.ap_id,
            "type": ACTOR_TYPE_BY_KIND[actor.kind],
            "preferredUsername": actor.name,
            "inbox": actor.inbox_url,
            "publicKey": {
                "id": f"{actor.ap_id}#main-key",
                "owner": actor.ap_id,
                "publicKeyHex": actor.public_key,
            },
        }
        if actor.display_name:
            document["name"] = actor.display_name
        if actor.summary:
            document["summary"] = actor.summary
        if actor.followers_url:
            document["followers"] = actor.followers_url
        if actor.shared_inbox_url:
            document["endpoints"] = {"sharedInbox": actor.shared_inbox_url}
        if actor.kind == "community":
            document["attributedTo"] = list(moderators)
            document["manuallyApprovesFollowers"] = actor.visibility == "private"
        if actor.published:
            document["published"] = self.format_timestamp(actor.published)
        return document

    def post_document(self, post: CachedObject) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": post.ap_id,
            "type": "Page",
            "attributedTo": post.creator_ap_id,
            "to": [post.community_ap_id, PUBLIC],
            "cc": [],
            "audience": post.community_ap_id,
            "name": post.name,
            "mediaType": "text/html",
            "commentsEnabled": not post.locked,
        }
        if post.content:
            document["content"] = post.content
        if post.url:
            document["url"] = post.url
        self._add_timestamps(document, post)
        return document

    def comment_document(
        self,
        comment: CachedObject,
        cc: Sequence[str] = (),
        mentions: Iterable[Tuple[str, str]] = (),
    ) -> Dict[str, Any]:
        """Builds a Note; ``mentions`` are ``(actor_ap_id, "@name@domain")`` pairs."""
        document: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": comment.ap_id,
            "type": "Note",
            "attributedTo": comment.creator_ap_id,
            "to": [PUBLIC],
            "cc": list(cc),
            "audience": comment.community_ap_id,
            "inReplyTo": comment.parent_ap_id or comment.post_ap_id,
            "content": comment.content or "",
            "mediaType": "text/html",
            "tag": [
                {"type": "Mention", "href": href, "name": name} for href, name in mentions
            ],
        }
        self._add_timestamps(document, comment)
        return document

    def private_message_document(self, message: CachedObject) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": message.ap_id,
            "type": "ChatMessage",
            "attributedTo": message.creator_ap_id,
            "to": [message.recipient_ap_id],
            "content": message.content or "",
            "mediaType": "text/html",
        }
        self._add_timestamps(document, message)
        return document

    def object_document(self, obj: CachedObject) -> Dict[str, Any]:
        if obj.kind == "post":
            return self.post_document(obj)
        if obj.kind == "comment":
            return self.comment_document(obj, cc=[obj.community_ap_id])
        return self.private_message_document(obj)

    def activity(
        self,
        kind: str,
        actor_ap_id: str,
        obj: Any,
        *,
        to: Sequence[str],
        cc: Sequence[str] = (),
        audience: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        """Wraps ``obj`` in an activity with a fresh id."""
        data: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": self.new_activity_id(kind),
            "type": kind,
            "actor": actor_ap_id,
            "object": obj,
            "to": list(to),
            "cc": list(cc),
        }
        if audience:
            data["audience"] = audience
        data.update(extra)
        return data

    # Incoming documents ------------------------------------------------------

    def actor_values(self, document: ActorDocument, refreshed_at: int) -> Dict[str, Any]:
        kind = ACTOR_KIND_BY_TYPE[document.type]
        private = kind == "community" and document.manually_approves_followers
        return {
            "ap_id": document.id,
            "kind": kind,
            "name": document.preferred_username,
            "display_name": document.name,
            "summary": document.summary,
            "public_key": document.public_key.public_key_hex,
            "inbox_url": document.inbox,
            "shared_inbox_url": document.shared_inbox,
            "followers_url": document.followers,
            "domain": url_domain(document.id),
            "local": False,
            "visibility": "private" if private else "public",
            "deleted": False,
            "published": self.parse_timestamp(document.published),
            "last_refreshed_at": refreshed_at,
        }

    def post_values(self, document: PageDocument, community_ap_id: str) -> Dict[str, Any]:
        values = {
            "ap_id": document.id,
            "kind": "post",
            "creator_ap_id": document.attributed_to,
            "community_ap_id": community_ap_id,
            "name": document.name,
            "content": document.content,
            "url": document.url,
            "local": False,
            "published": self.parse_timestamp(document.published),
            "updated": self.parse_timestamp(document.updated),
        }
        if document.comments_enabled is not None:
            values["locked"] = not document.comments_enabled
        return values

    def comment_values(
        self,
        document: NoteDocument,
        *,
        post_ap_id: str,
        parent_ap_id: Optional[str],
        community_ap_id: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "ap_id": document.id,
            "kind": "comment",
            "creator_ap_id": document.attributed_to,
            "community_ap_id": community_ap_id,
            "post_ap_id": post_ap_id,
            "parent_ap_id": parent_ap_id,
            "content": document.content,
            "local": False,
            "published": self.parse_timestamp(document.published),
            "updated": self.parse_timestamp(document.updated),
        }

    def private_message_values(self, document: ChatMessageDocument) -> Dict[str, Any]:
        return {
            "ap_id": document.id,
            "kind": "private_message",
            "creator_ap_id": document.attributed_to,
            "recipient_ap_id": document.to[0],
            "content": document.content,
            "local": False,
            "published": self.parse_timestamp(document.published),
            "updated": self.parse_timestamp(document.updated),
        }

    def _add_timestamps(self, document: Dict[str, Any], obj: CachedObject) -> None:
        if obj.published:
            document["published"] = self.format_timestamp(obj.published)
        if obj.updated:
            document["updated"] = self.format_timestamp(obj.updated)

    @staticmethod
    def format_timestamp(timestamp: int) -> str:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()

    @staticmethod
    def parse_timestamp(value: Optional[str]) -> Optional[int]:
        if not value:
            return None
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return int(moment.timestamp())


__all__ = [
    "ACTOR_KIND_BY_TYPE",
    "ACTOR_TYPE_BY_KIND",
    "OBJECT_TYPE_BY_KIND",
    "ActivityPubTranslator",
]
