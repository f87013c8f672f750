"""Domain events emitted by the local CRUD layer.

Every event is a frozen dataclass referencing rows by their ActivityPub id.
``DOMAIN_EVENTS`` is the closed set of kinds the message builder must handle.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union, get_args


@dataclass(frozen=True)
class PostCreated:
    actor_ap_id: str
    post_ap_id: str


@dataclass(frozen=True)
class PostUpdated:
    actor_ap_id: str
    post_ap_id: str


@dataclass(frozen=True)
class PostDeleted:
    actor_ap_id: str
    post_ap_id: str
    restored: bool = False


@dataclass(frozen=True)
class CommentCreated:
    actor_ap_id: str
    comment_ap_id: str


@dataclass(frozen=True)
class CommentUpdated:
    actor_ap_id: str
    comment_ap_id: str


@dataclass(frozen=True)
class CommentDeleted:
    actor_ap_id: str
    comment_ap_id: str
    restored: bool = False


@dataclass(frozen=True)
class VoteCast:
    """A like (1), dislike (-1) or vote retraction (0) on a post or comment."""

    actor_ap_id: str
    object_ap_id: str
    score: int


@dataclass(frozen=True)
class ContentRemoved:
    """A moderator removed (or restored) a post or comment."""

    moderator_ap_id: str
    object_ap_id: str
    reason: Optional[str] = None
    restored: bool = False


@dataclass(frozen=True)
class PostLocked:
    """A moderator locked (or unlocked) a post against new comments."""

    moderator_ap_id: str
    post_ap_id: str
    locked: bool = True
    reason: Optional[str] = None


@dataclass(frozen=True)
class CommunityBanChanged:
    moderator_ap_id: str
    community_ap_id: str
    person_ap_id: str
    banned: bool = True
    reason: Optional[str] = None
    expires: Optional[int] = None


@dataclass(frozen=True)
class ModeratorChanged:
    actor_ap_id: str
    community_ap_id: str
    person_ap_id: str
    added: bool = True


@dataclass(frozen=True)
class CommunityTransferred:
    """Ownership changed; the new moderator list is read from storage."""

    actor_ap_id: str
    community_ap_id: str


@dataclass(frozen=True)
class CommunityUpdated:
    actor_ap_id: str
    community_ap_id: str


@dataclass(frozen=True)
class PersonUpdated:
    person_ap_id: str


@dataclass(frozen=True)
class SiteBanChanged:
    """An admin banned (or unbanned) a person instance-wide."""

    admin_ap_id: str
    person_ap_id: str
    banned: bool = True
    reason: Optional[str] = None
    expires: Optional[int] = None


@dataclass(frozen=True)
class FeedUpdated:
    feed_ap_id: str


@dataclass(frozen=True)
class PrivateMessageCreated:
    actor_ap_id: str
    message_ap_id: str


@dataclass(frozen=True)
class PrivateMessageUpdated:
    actor_ap_id: str
    message_ap_id: str


@dataclass(frozen=True)
class PrivateMessageDeleted:
    actor_ap_id: str
    message_ap_id: str
    restored: bool = False


@dataclass(frozen=True)
class FollowRequested:
    follower_ap_id: str
    target_ap_id: str
    undo: bool = False


@dataclass(frozen=True)
class FollowAccepted:
    """A local actor accepted a follow; ``follow_id`` is the inbound Follow activity id."""

    target_ap_id: str
    follower_ap_id: str
    follow_id: str


DomainEvent = Union[
    PostCreated,
    PostUpdated,
    PostDeleted,
    CommentCreated,
    CommentUpdated,
    CommentDeleted,
    VoteCast,
    ContentRemoved,
    PostLocked,
    CommunityBanChanged,
    ModeratorChanged,
    CommunityTransferred,
    CommunityUpdated,
    PersonUpdated,
    SiteBanChanged,
    FeedUpdated,
    PrivateMessageCreated,
    PrivateMessageUpdated,
    PrivateMessageDeleted,
    FollowRequested,
    FollowAccepted,
]

DOMAIN_EVENTS = get_args(DomainEvent)

__all__ = [event.__name__ for event in DOMAIN_EVENTS] + ["DOMAIN_EVENTS", "DomainEvent"]
