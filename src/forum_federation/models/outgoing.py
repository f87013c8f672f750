from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Audience:
    """Independent delivery rules for one outgoing message.

    All rules may be set at once; the audience resolver takes their union.
    """

    inboxes: Tuple[str, ...] = ()
    all_instances: bool = False
    followers_of_community: Optional[str] = None
    followers_of_person: Optional[str] = None
    followers_of_feed: Optional[str] = None
    exclude_domains: FrozenSet[str] = field(default_factory=frozenset)

    def is_empty(self) -> bool:
        return not (
            self.inboxes
            or self.all_instances
            or self.followers_of_community
            or self.followers_of_person
            or self.followers_of_feed
        )


@dataclass(frozen=True)
class OutgoingMessage:
    """A built activity waiting for persistence and delivery.

    ``object_ap_id`` is the ordering key: deliveries of messages sharing it
    reach each inbox in submission order.
    """

    id: str
    kind: str
    actor_ap_id: str
    object_ap_id: str
    payload: Mapping[str, Any]
    cc: Tuple[str, ...] = ()
    audience: Audience = field(default_factory=Audience)
    sensitive: bool = False

    def body(self) -> bytes:
        return json.dumps(self.payload, separators=(",", ":")).encode("utf-8")


__all__ = ["Audience", "OutgoingMessage"]
