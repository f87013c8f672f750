from __future__ import annotations

from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
ACTIVITY_CONTEXT = (AS_CONTEXT, "https://w3id.org/security/v1")

ACTOR_TYPES = ("Person", "Group", "Application", "Service", "Feed")
PAGE_TYPES = ("Page", "Article", "Video", "Event")
NOTE_TYPES = ("Note",)
CHAT_MESSAGE_TYPES = ("ChatMessage",)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_id(value: Any) -> Any:
    """Collapse ``{"id": ...}`` link objects to their id."""
    if isinstance(value, dict) and "id" in value:
        return value["id"]
    return value


class ApModel(BaseModel):
    """Base for ActivityStreams documents; unknown properties are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    context: Any = Field(default=None, alias="@context")


class PublicKey(BaseModel):
    """Schema for an actor's Ed25519 public key."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    owner: str
    public_key_hex: str = Field(alias="publicKeyHex", min_length=64, max_length=64)


class Endpoints(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    shared_inbox: Optional[str] = Field(default=None, alias="sharedInbox")


class ActorDocument(ApModel):
    """Schema for a Person, Group (community), Application (site) or Feed actor."""

    id: str
    type: str
    preferred_username: str = Field(alias="preferredUsername", min_length=1)
    name: Optional[str] = None
    summary: Optional[str] = None
    inbox: str
    outbox: Optional[str] = None
    followers: Optional[str] = None
    endpoints: Optional[Endpoints] = None
    public_key: PublicKey = Field(alias="publicKey")
    attributed_to: List[str] = Field(default_factory=list, alias="attributedTo")
    manually_approves_followers: bool = Field(
        default=False, alias="manuallyApprovesFollowers"
    )
    published: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in ACTOR_TYPES:
            raise ValueError(f"unsupported actor type {value!r}")
        return value

    @field_validator("attributed_to", mode="before")
    @classmethod
    def _normalize_attributed_to(cls, value: Any) -> List[Any]:
        return [_as_id(item) for item in _as_list(value)]

    @property
    def shared_inbox(self) -> Optional[str]:
        return self.endpoints.shared_inbox if self.endpoints else None


class ContentDocument(ApModel):
    """Common shape of posts, comments and private messages."""

    id: str
    type: str
    attributed_to: str = Field(alias="attributedTo")
    content: Optional[str] = None
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    published: Optional[str] = None
    updated: Optional[str] = None

    @field_validator("to", "cc", mode="before")
    @classmethod
    def _normalize_addressing(cls, value: Any) -> List[Any]:
        return [_as_id(item) for item in _as_list(value)]

    @field_validator("attributed_to", mode="before")
    @classmethod
    def _normalize_creator(cls, value: Any) -> Any:
        items = _as_list(value)
        return _as_id(items[0]) if items else value


class PageDocument(ContentDocument):
    """Schema for a post, addressed to its community through ``audience``."""

    name: str = Field(min_length=1)
    url: Optional[str] = None
    audience: Optional[str] = None
    comments_enabled: Optional[bool] = Field(default=None, alias="commentsEnabled")
    sensitive: Optional[bool] = None

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in PAGE_TYPES:
            raise ValueError(f"unsupported post type {value!r}")
        return value

    def community_ref(self) -> Optional[str]:
        """The community is named by ``audience``; older peers put it in ``to``."""
        if self.audience:
            return self.audience
        for address in self.to + self.cc:
            if address != PUBLIC:
                return address
        return None


class Mention(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    href: Optional[str] = None
    name: Optional[str] = None


class NoteDocument(ContentDocument):
    """Schema for a comment; ``inReplyTo`` is the post or the parent comment."""

    in_reply_to: str = Field(alias="inReplyTo")
    audience: Optional[str] = None
    tag: List[Mention] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in NOTE_TYPES:
            raise ValueError(f"unsupported comment type {value!r}")
        return value

    @field_validator("in_reply_to", mode="before")
    @classmethod
    def _normalize_in_reply_to(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("tag", mode="before")
    @classmethod
    def _normalize_tag(cls, value: Any) -> List[Any]:
        return _as_list(value)


class ChatMessageDocument(ContentDocument):
    """Schema for a private message; ``to`` names exactly one recipient."""

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in CHAT_MESSAGE_TYPES:
            raise ValueError(f"unsupported private message type {value!r}")
        return value

    @field_validator("to")
    @classmethod
    def _check_recipient(cls, value: List[str]) -> List[str]:
        if len(value) != 1:
            raise ValueError("private message must have exactly one recipient")
        return value


class Activity(ApModel):
    """Schema for an inbound or outbound activity envelope."""

    id: str
    type: str = Field(min_length=1)
    actor: str
    object: Union[str, dict]
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    target: Optional[str] = None
    audience: Optional[str] = None
    summary: Optional[str] = None
    published: Optional[str] = None

    @field_validator("actor", "target", mode="before")
    @classmethod
    def _normalize_ref(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("to", "cc", mode="before")
    @classmethod
    def _normalize_addressing(cls, value: Any) -> List[Any]:
        return [_as_id(item) for item in _as_list(value)]

    @property
    def object_id(self) -> Optional[str]:
        if isinstance(self.object, str):
            return self.object
        value = self.object.get("id")
        return value if isinstance(value, str) else None

    @property
    def object_type(self) -> Optional[str]:
        if isinstance(self.object, dict):
            value = self.object.get("type")
            return value if isinstance(value, str) else None
        return None


class WebfingerLink(BaseModel):
    model_config = ConfigDict(extra="allow")

    rel: Optional[str] = None
    type: Optional[str] = None
    href: Optional[str] = None


class WebfingerResponse(BaseModel):
    """Schema for a ``/.well-known/webfinger`` response."""

    subject: str
    links: Tuple[WebfingerLink, ...] = ()

    def actor_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel == "self" and link.href and (
                link.type is None
                or link.type in ("application/activity+json", "application/ld+json")
                or link.type.startswith("application/ld+json")
            ):
                return link.href
        return None
