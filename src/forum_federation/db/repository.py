from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forum_federation.core.security import activity_fingerprint

from .base import DatabaseSessionManager
from .models import (
    ActivityRecord,
    CachedActor,
    CachedObject,
    CommunityBan,
    CommunityModerator,
    FederatedInstance,
    Follow,
    QuarantinedActivity,
    Vote,
)


class PersistenceFailure(RuntimeError):
    """Raised when a row that must be durable could not be written."""


class FederationRepository:
    """Persistence primitives backed by SQLAlchemy for the federation engine.

    Every write to the actor and object caches is an upsert keyed by ``ap_id``,
    so concurrent resolution of the same reference converges without locks.
    """

    def __init__(self, db: DatabaseSessionManager) -> None:
        """Initializes the FederationRepository with a database session manager.

        Args:
            db: The DatabaseSessionManager instance.
        """
        self._db = db

    def _insert(self, model):
        if self._db.dialect == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    def _upsert(
        self,
        session: Session,
        model,
        values: Mapping[str, Any],
        conflict_columns: Sequence[str],
    ) -> None:
        stmt = self._insert(model).values(**values)
        updates = {
            name: stmt.excluded[name] for name in values if name not in conflict_columns
        }
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        session.execute(stmt)

    # Actors -----------------------------------------------------------------

    def get_actor(self, ap_id: str) -> Optional[CachedActor]:
        with self._db.session() as session:
            return session.scalars(
                select(CachedActor).where(CachedActor.ap_id == ap_id)
            ).first()

    def get_local_actor(self, kind: str, name: str) -> Optional[CachedActor]:
        """Looks up a locally owned actor by kind and name."""
        with self._db.session() as session:
            return session.scalars(
                select(CachedActor).where(
                    CachedActor.kind == kind,
                    CachedActor.name == name,
                    CachedActor.local.is_(True),
                )
            ).first()

    def find_actor(self, kind: str, name: str, domain: str) -> Optional[CachedActor]:
        """Looks up a cached actor by its ``name@domain`` handle."""
        with self._db.session() as session:
            return session.scalars(
                select(CachedActor).where(
                    CachedActor.kind == kind,
                    CachedActor.name == name,
                    CachedActor.domain == domain.lower(),
                )
            ).first()

    def upsert_actor(self, values: Mapping[str, Any]) -> CachedActor:
        """Inserts or updates an actor row keyed by ``ap_id``.

        Private keys are only ever stored for local actors. Seeing a remote
        actor also records its instance as known.

        Args:
            values: Column values; must include ``ap_id``.

        Returns:
            The stored CachedActor.
        """
        row = dict(values)
        if not row.get("local", False):
            row["private_key"] = None
        row.setdefault("last_refreshed_at", int(time.time()))
        with self._db.session() as session:
            self._upsert(session, CachedActor, row, ["ap_id"])
            if not row.get("local", False) and row.get("domain"):
                self._touch_instance(session, row["domain"])
            return session.scalars(
                select(CachedActor).where(CachedActor.ap_id == row["ap_id"])
            ).one()

    def update_actor_flags(self, ap_id: str, **flags: Any) -> Optional[CachedActor]:
        """Sets ``deleted``/``removed``/``banned`` style flags on an actor."""
        with self._db.session() as session:
            actor = session.scalars(
                select(CachedActor).where(CachedActor.ap_id == ap_id)
            ).first()
            if actor is None:
                return None
            for name, value in flags.items():
                setattr(actor, name, value)
            return actor

    def get_site_actor(self, domain: str) -> Optional[CachedActor]:
        with self._db.session() as session:
            return session.scalars(
                select(CachedActor).where(
                    CachedActor.kind == "site", CachedActor.domain == domain
                )
            ).first()

    # Objects ----------------------------------------------------------------

    def get_object(self, ap_id: str) -> Optional[CachedObject]:
        with self._db.session() as session:
            return session.scalars(
                select(CachedObject).where(CachedObject.ap_id == ap_id)
            ).first()

    def upsert_object(self, values: Mapping[str, Any]) -> CachedObject:
        """Inserts or updates a post, comment or private message keyed by ``ap_id``.

        Only the supplied columns are written, so reapplying the same payload
        leaves the row unchanged.
        """
        with self._db.session() as session:
            self._upsert(session, CachedObject, values, ["ap_id"])
            return session.scalars(
                select(CachedObject).where(CachedObject.ap_id == values["ap_id"])
            ).one()

    def update_object_flags(self, ap_id: str, **flags: Any) -> Optional[CachedObject]:
        """Sets ``deleted``/``removed``/``locked`` flags on an object."""
        with self._db.session() as session:
            obj = session.scalars(
                select(CachedObject).where(CachedObject.ap_id == ap_id)
            ).first()
            if obj is None:
                return None
            for name, value in flags.items():
                setattr(obj, name, value)
            return obj

    # Follows ----------------------------------------------------------------

    def upsert_follow(self, target_ap_id: str, follower_ap_id: str, *, pending: bool) -> Follow:
        with self._db.session() as session:
            self._upsert(
                session,
                Follow,
                {
                    "target_ap_id": target_ap_id,
                    "follower_ap_id": follower_ap_id,
                    "pending": pending,
                    "created_at": int(time.time()),
                },
                ["target_ap_id", "follower_ap_id"],
            )
            return session.scalars(
                select(Follow).where(
                    Follow.target_ap_id == target_ap_id,
                    Follow.follower_ap_id == follower_ap_id,
                )
            ).one()

    def remove_follow(self, target_ap_id: str, follower_ap_id: str) -> None:
        with self._db.session() as session:
            session.execute(
                delete(Follow).where(
                    Follow.target_ap_id == target_ap_id,
                    Follow.follower_ap_id == follower_ap_id,
                )
            )

    def get_follow(self, target_ap_id: str, follower_ap_id: str) -> Optional[Follow]:
        with self._db.session() as session:
            return session.scalars(
                select(Follow).where(
                    Follow.target_ap_id == target_ap_id,
                    Follow.follower_ap_id == follower_ap_id,
                )
            ).first()

    def has_accepted_follower_on(self, target_ap_id: str, domain: str) -> bool:
        """True when some actor of ``domain`` follows ``target_ap_id`` with an accepted follow."""
        with self._db.session() as session:
            found = session.execute(
                select(Follow.id)
                .join(CachedActor, CachedActor.ap_id == Follow.follower_ap_id)
                .where(
                    Follow.target_ap_id == target_ap_id,
                    Follow.pending.is_(False),
                    CachedActor.domain == domain,
                )
                .limit(1)
            ).first()
            return found is not None

    def list_followers(self, target_ap_id: str) -> List[str]:
        with self._db.session() as session:
            return list(
                session.scalars(
                    select(Follow.follower_ap_id)
                    .where(Follow.target_ap_id == target_ap_id, Follow.pending.is_(False))
                    .order_by(Follow.id)
                )
            )

    def follower_inboxes(self, target_ap_id: str) -> List[Tuple[str, Optional[str]]]:
        """Returns ``(inbox, shared_inbox)`` for every accepted remote follower."""
        with self._db.session() as session:
            rows = session.execute(
                select(CachedActor.inbox_url, CachedActor.shared_inbox_url)
                .join(Follow, Follow.follower_ap_id == CachedActor.ap_id)
                .where(
                    Follow.target_ap_id == target_ap_id,
                    Follow.pending.is_(False),
                    CachedActor.local.is_(False),
                )
            ).all()
            return [(row[0], row[1]) for row in rows]

    # Moderation -------------------------------------------------------------

    def replace_moderators(self, community_ap_id: str, person_ap_ids: Iterable[str]) -> None:
        with self._db.session() as session:
            session.execute(
                delete(CommunityModerator).where(
                    CommunityModerator.community_ap_id == community_ap_id
                )
            )
            for person_ap_id in dict.fromkeys(person_ap_ids):
                session.add(
                    CommunityModerator(
                        community_ap_id=community_ap_id, person_ap_id=person_ap_id
                    )
                )

    def set_moderator(self, community_ap_id: str, person_ap_id: str, *, active: bool) -> None:
        with self._db.session() as session:
            if active:
                self._upsert(
                    session,
                    CommunityModerator,
                    {"community_ap_id": community_ap_id, "person_ap_id": person_ap_id},
                    ["community_ap_id", "person_ap_id"],
                )
            else:
                session.execute(
                    delete(CommunityModerator).where(
                        CommunityModerator.community_ap_id == community_ap_id,
                        CommunityModerator.person_ap_id == person_ap_id,
                    )
                )

    def list_moderators(self, community_ap_id: str) -> List[str]:
        with self._db.session() as session:
            return list(
                session.scalars(
                    select(CommunityModerator.person_ap_id)
                    .where(CommunityModerator.community_ap_id == community_ap_id)
                    .order_by(CommunityModerator.id)
                )
            )

    def is_moderator(self, community_ap_id: str, person_ap_id: str) -> bool:
        return person_ap_id in self.list_moderators(community_ap_id)

    def set_community_ban(self, community_ap_id: str, person_ap_id: str, *, banned: bool) -> None:
        with self._db.session() as session:
            if banned:
                self._upsert(
                    session,
                    CommunityBan,
                    {
                        "community_ap_id": community_ap_id,
                        "person_ap_id": person_ap_id,
                        "created_at": int(time.time()),
                    },
                    ["community_ap_id", "person_ap_id"],
                )
            else:
                session.execute(
                    delete(CommunityBan).where(
                        CommunityBan.community_ap_id == community_ap_id,
                        CommunityBan.person_ap_id == person_ap_id,
                    )
                )

    def is_banned_from_community(self, community_ap_id: str, person_ap_id: str) -> bool:
        with self._db.session() as session:
            found = session.execute(
                select(CommunityBan.id).where(
                    CommunityBan.community_ap_id == community_ap_id,
                    CommunityBan.person_ap_id == person_ap_id,
                )
            ).first()
            return found is not None

    # Votes ------------------------------------------------------------------

    def upsert_vote(self, object_ap_id: str, voter_ap_id: str, score: int) -> Vote:
        with self._db.session() as session:
            self._upsert(
                session,
                Vote,
                {"object_ap_id": object_ap_id, "voter_ap_id": voter_ap_id, "score": score},
                ["object_ap_id", "voter_ap_id"],
            )
            return session.scalars(
                select(Vote).where(
                    Vote.object_ap_id == object_ap_id, Vote.voter_ap_id == voter_ap_id
                )
            ).one()

    def remove_vote(self, object_ap_id: str, voter_ap_id: str) -> None:
        with self._db.session() as session:
            session.execute(
                delete(Vote).where(
                    Vote.object_ap_id == object_ap_id, Vote.voter_ap_id == voter_ap_id
                )
            )

    def get_score(self, object_ap_id: str) -> int:
        with self._db.session() as session:
            return sum(
                session.scalars(select(Vote.score).where(Vote.object_ap_id == object_ap_id))
            )

    # Instances --------------------------------------------------------------

    def _touch_instance(self, session: Session, domain: str) -> None:
        now = int(time.time())
        stmt = self._insert(FederatedInstance).values(
            domain=domain, first_seen_at=now, last_seen_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["domain"], set_={"last_seen_at": stmt.excluded.last_seen_at}
        )
        session.execute(stmt)

    def known_instances(self) -> List[str]:
        with self._db.session() as session:
            return list(
                session.scalars(select(FederatedInstance.domain).order_by(FederatedInstance.domain))
            )

    def site_actor_inboxes(self) -> Dict[str, str]:
        """Maps each remote domain with a cached site actor to its preferred inbox."""
        with self._db.session() as session:
            rows = session.execute(
                select(
                    CachedActor.domain, CachedActor.inbox_url, CachedActor.shared_inbox_url
                ).where(CachedActor.kind == "site", CachedActor.local.is_(False))
            ).all()
            return {row[0]: row[2] or row[1] for row in rows}

    # Activities -------------------------------------------------------------

    def record_activity(
        self,
        *,
        ap_id: str,
        kind: str,
        actor_ap_id: str,
        data: Mapping[str, Any],
        inboxes: Sequence[str] = (),
        local: bool,
        sensitive: bool = False,
    ) -> bool:
        """Appends an activity to the durable log.

        Returns:
            True if the activity was recorded, False if the id was already known.

        Raises:
            PersistenceFailure: If the row could not be written.
        """
        try:
            with self._db.session() as session:
                existing = session.execute(
                    select(ActivityRecord.id).where(ActivityRecord.ap_id == ap_id)
                ).first()
                if existing:
                    return False
                stmt = self._insert(ActivityRecord).values(
                    ap_id=ap_id,
                    kind=kind,
                    actor_ap_id=actor_ap_id,
                    data=json.dumps(data, sort_keys=True),
                    inboxes=json.dumps(list(inboxes)),
                    local=local,
                    sensitive=sensitive,
                    created_at=int(time.time()),
                )
                result = session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["ap_id"])
                )
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"could not record activity {ap_id}") from exc

    def activity_exists(self, ap_id: str) -> bool:
        with self._db.session() as session:
            found = session.execute(
                select(ActivityRecord.id).where(ActivityRecord.ap_id == ap_id)
            ).first()
            return found is not None

    def get_activity(self, ap_id: str) -> Optional[ActivityRecord]:
        with self._db.session() as session:
            return session.scalars(
                select(ActivityRecord).where(ActivityRecord.ap_id == ap_id)
            ).first()

    def quarantine_activity(self, raw_body: bytes, reason: str) -> None:
        """Stores a malformed inbound payload for operator review.

        Args:
            raw_body: The raw bytes of the rejected request body.
            reason: The reason for quarantining the payload.
        """
        now = int(time.time())
        # Content-addressed so repeated deliveries of one payload keep one row.
        stmt = self._insert(QuarantinedActivity).values(
            id=activity_fingerprint([raw_body]),
            raw_body=raw_body,
            reason=reason,
            quarantined_at=now,
        )
        with self._db.session() as session:
            session.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))

    def count_quarantined(self) -> int:
        with self._db.session() as session:
            return len(session.scalars(select(QuarantinedActivity.id)).all())


__all__ = ["FederationRepository", "PersistenceFailure"]
