from .base import DatabaseSessionManager, Base
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
from .repository import FederationRepository, PersistenceFailure

__all__ = [
    "DatabaseSessionManager",
    "Base",
    "ActivityRecord",
    "CachedActor",
    "CachedObject",
    "CommunityBan",
    "CommunityModerator",
    "FederatedInstance",
    "Follow",
    "QuarantinedActivity",
    "Vote",
    "FederationRepository",
    "PersistenceFailure",
]
