"""Domain models for the federation engine."""

from .events import DOMAIN_EVENTS, DomainEvent
from .federation import ActivityParseError, InboundRequest
from .outgoing import Audience, OutgoingMessage

__all__ = [
    "ActivityParseError",
    "Audience",
    "DOMAIN_EVENTS",
    "DomainEvent",
    "InboundRequest",
    "OutgoingMessage",
]
