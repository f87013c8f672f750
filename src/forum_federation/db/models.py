from __future__ import annotations

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)

from .base import Base


ACTOR_KINDS = ("person", "community", "site", "feed")
OBJECT_KINDS = ("post", "comment", "private_message")


class CachedActor(Base):
    """A person, community, site or feed actor, either local or cached from a remote instance."""

    __tablename__ = "actors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ap_id = Column(String(512), unique=True, nullable=False)
    kind = Column(String(16), nullable=False)
    name = Column(String(255), nullable=False)
    display_name = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    public_key = Column(String(128), nullable=False)
    private_key = Column(String(128), nullable=True)  # Only set for local actors
    inbox_url = Column(Text, nullable=False)
    shared_inbox_url = Column(Text, nullable=True)
    followers_url = Column(Text, nullable=True)
    domain = Column(String(255), nullable=False)
    local = Column(Boolean, nullable=False, default=False)
    banned = Column(Boolean, nullable=False, default=False)
    visibility = Column(String(16), nullable=False, default="public")
    deleted = Column(Boolean, nullable=False, default=False)
    removed = Column(Boolean, nullable=False, default=False)
    published = Column(BigInteger, nullable=True)
    last_refreshed_at = Column(BigInteger, nullable=False)


class CachedObject(Base):
    """A post, comment or private message keyed by its ActivityPub id."""

    __tablename__ = "objects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ap_id = Column(String(512), unique=True, nullable=False)
    kind = Column(String(16), nullable=False)
    creator_ap_id = Column(String(512), nullable=False)
    community_ap_id = Column(String(512), nullable=True)
    post_ap_id = Column(String(512), nullable=True)
    parent_ap_id = Column(String(512), nullable=True)
    recipient_ap_id = Column(String(512), nullable=True)
    name = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    url = Column(Text, nullable=True)
    local = Column(Boolean, nullable=False, default=False)
    deleted = Column(Boolean, nullable=False, default=False)
    removed = Column(Boolean, nullable=False, default=False)
    locked = Column(Boolean, nullable=False, default=False)
    published = Column(BigInteger, nullable=True)
    updated = Column(BigInteger, nullable=True)


class Follow(Base):
    """A follow relationship towards a community, person or aggregated feed."""

    __tablename__ = "follows"
    __table_args__ = (UniqueConstraint("target_ap_id", "follower_ap_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_ap_id = Column(String(512), nullable=False, index=True)
    follower_ap_id = Column(String(512), nullable=False)
    pending = Column(Boolean, nullable=False, default=True)
    created_at = Column(BigInteger, nullable=False)


class CommunityModerator(Base):
    """Moderators of a community, as announced by the community's instance."""

    __tablename__ = "community_moderators"
    __table_args__ = (UniqueConstraint("community_ap_id", "person_ap_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    community_ap_id = Column(String(512), nullable=False, index=True)
    person_ap_id = Column(String(512), nullable=False)


class CommunityBan(Base):
    """A person banned from posting in a community."""

    __tablename__ = "community_bans"
    __table_args__ = (UniqueConstraint("community_ap_id", "person_ap_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    community_ap_id = Column(String(512), nullable=False, index=True)
    person_ap_id = Column(String(512), nullable=False)
    created_at = Column(BigInteger, nullable=False)


class Vote(Base):
    """A like (+1) or dislike (-1) on a post or comment."""

    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("object_ap_id", "voter_ap_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    object_ap_id = Column(String(512), nullable=False, index=True)
    voter_ap_id = Column(String(512), nullable=False)
    score = Column(Integer, nullable=False)


class FederatedInstance(Base):
    """A remote instance this server has seen actors from."""

    __tablename__ = "instances"

    domain = Column(String(255), primary_key=True)
    first_seen_at = Column(BigInteger, nullable=False)
    last_seen_at = Column(BigInteger, nullable=False)


class ActivityRecord(Base):
    """Durable log of every sent and received activity; never mutated after insert."""

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ap_id = Column(String(512), unique=True, nullable=False)
    kind = Column(String(32), nullable=False)
    actor_ap_id = Column(String(512), nullable=False)
    data = Column(Text, nullable=False)
    inboxes = Column(Text, nullable=False, default="[]")
    local = Column(Boolean, nullable=False)
    sensitive = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)


class QuarantinedActivity(Base):
    """Stores inbound payloads that failed parsing for operator review."""

    __tablename__ = "quarantined_activities"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    raw_body = Column(LargeBinary, nullable=False)
    reason = Column(Text, nullable=False)
    quarantined_at = Column(BigInteger, nullable=False)
