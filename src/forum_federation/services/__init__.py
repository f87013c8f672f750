from .resolver import (
    InvalidReference,
    NotAnExpectedType,
    RecursionBudget,
    RecursionExceeded,
    RemoteFetchFailed,
    Resolver,
    ResolverError,
)
from .http_client import ActivityPubClient
from .translator import ActivityPubTranslator
from .mentions import MentionResolver
from .builder import BuildError, MessageBuilder
from .audience import AudienceResolver
from .delivery import DeliveryQueue, DeliveryResult, HttpTransport
from .outbox import Outbox
from .inbox import InboxOutcome, InboxService, Rejection
from .actors import LocalActorService

__all__ = [
    "ActivityPubClient",
    "ActivityPubTranslator",
    "AudienceResolver",
    "BuildError",
    "DeliveryQueue",
    "DeliveryResult",
    "HttpTransport",
    "InboxOutcome",
    "InboxService",
    "InvalidReference",
    "LocalActorService",
    "MentionResolver",
    "MessageBuilder",
    "NotAnExpectedType",
    "Outbox",
    "RecursionBudget",
    "RecursionExceeded",
    "Rejection",
    "RemoteFetchFailed",
    "Resolver",
    "ResolverError",
]
