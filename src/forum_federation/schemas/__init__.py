from .activitypub import (
    ACTIVITY_CONTEXT,
    ACTOR_TYPES,
    AS_CONTEXT,
    CHAT_MESSAGE_TYPES,
    NOTE_TYPES,
    PAGE_TYPES,
    PUBLIC,
    Activity,
    ActorDocument,
    ChatMessageDocument,
    ContentDocument,
    Mention,
    NoteDocument,
    PageDocument,
    PublicKey,
    WebfingerLink,
    WebfingerResponse,
)

__all__ = [
    "ACTIVITY_CONTEXT",
    "ACTOR_TYPES",
    "AS_CONTEXT",
    "CHAT_MESSAGE_TYPES",
    "NOTE_TYPES",
    "PAGE_TYPES",
    "PUBLIC",
    "Activity",
    "ActorDocument",
    "ChatMessageDocument",
    "ContentDocument",
    "Mention",
    "NoteDocument",
    "PageDocument",
    "PublicKey",
    "WebfingerLink",
    "WebfingerResponse",
]
