import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlsplit

import httpx
import pytest
from nacl.signing import SigningKey

from forum_federation.core.policy import FederationPolicy
from forum_federation.core.security import sign_request
from forum_federation.core.settings import FederationSettings
from forum_federation.db import CachedActor, DatabaseSessionManager, FederationRepository
from forum_federation.models import InboundRequest
from forum_federation.schemas import ACTIVITY_CONTEXT, PUBLIC, ActorDocument
from forum_federation.services.actors import LocalActorService
from forum_federation.services.http_client import ActivityPubClient
from forum_federation.services.resolver import Resolver
from forum_federation.services.translator import ActivityPubTranslator

LOCAL_HOST = "forum.example"
LOCAL_BASE = f"https://{LOCAL_HOST}"
REMOTE_DOMAIN = "remote.example"

ACTOR_PATHS = {"person": "u", "community": "c", "feed": "feeds"}
ACTOR_TYPES = {"person": "Person", "community": "Group", "site": "Application", "feed": "Feed"}


def _json_response(document: Dict[str, Any], content_type: str) -> httpx.Response:
    return httpx.Response(
        200,
        content=json.dumps(document).encode("utf-8"),
        headers={"content-type": content_type},
    )


class RemoteWeb:
    """Remote instances simulated behind an httpx.MockTransport.

    Serves registered documents and webfinger records, records every request,
    and answers POSTs to inboxes with ``inbox_status``.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.keys: Dict[str, SigningKey] = {}
        self.webfinger_records: Dict[str, str] = {}
        self.requests: List[httpx.Request] = []
        self.unavailable: Set[str] = set()
        self.inbox_status = 202

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.url.host in self.unavailable:
            return httpx.Response(503)
        if request.method == "POST":
            return httpx.Response(self.inbox_status)
        if request.url.path == "/.well-known/webfinger":
            resource = request.url.params.get("resource", "")
            href = self.webfinger_records.get(resource.removeprefix("acct:"))
            if href is None:
                return httpx.Response(404)
            record = {
                "subject": resource,
                "links": [{"rel": "self", "type": "application/activity+json", "href": href}],
            }
            return _json_response(record, "application/jrd+json")
        document = self.documents.get(url)
        if document is None:
            return httpx.Response(404)
        return _json_response(document, "application/activity+json")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def fetched(self) -> List[str]:
        return [str(request.url) for request in self.requests if request.method == "GET"]

    def posted(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.method == "POST"]

    def actor(self, kind: str, name: str, /, domain: str = REMOTE_DOMAIN, **extra: Any) -> Dict[str, Any]:
        key = SigningKey.generate()
        base = f"https://{domain}"
        ap_id = f"{base}/" if kind == "site" else f"{base}/{ACTOR_PATHS[kind]}/{name}"
        document: Dict[str, Any] = {
            "@context": list(ACTIVITY_CONTEXT),
            "id": ap_id,
            "type": ACTOR_TYPES[kind],
            "preferredUsername": name,
            "inbox": f"{base}/inbox" if kind == "site" else f"{ap_id}/inbox",
            "followers": f"{ap_id}/followers",
            "endpoints": {"sharedInbox": f"{base}/inbox"},
            "publicKey": {
                "id": f"{ap_id}#main-key",
                "owner": ap_id,
                "publicKeyHex": key.verify_key.encode().hex(),
            },
        }
        document.update(extra)
        self.documents[ap_id] = document
        self.keys[ap_id] = key
        self.webfinger_records[f"{name}@{domain}"] = ap_id
        return document

    def post(self, ap_id: str, creator: str, community: str, **extra: Any) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "id": ap_id,
            "type": "Page",
            "attributedTo": creator,
            "to": [community, PUBLIC],
            "audience": community,
            "name": "A post",
            "content": "<p>hello</p>",
        }
        document.update(extra)
        self.documents[ap_id] = document
        return document

    def comment(self, ap_id: str, creator: str, in_reply_to: str, **extra: Any) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "id": ap_id,
            "type": "Note",
            "attributedTo": creator,
            "to": [PUBLIC],
            "inReplyTo": in_reply_to,
            "content": "<p>a reply</p>",
        }
        document.update(extra)
        self.documents[ap_id] = document
        return document

    def sign(
        self,
        activity: Dict[str, Any],
        *,
        url: str = f"{LOCAL_BASE}/inbox",
        signer: Optional[str] = None,
        now: Optional[float] = None,
    ) -> InboundRequest:
        """Builds the inbound request a remote instance would send for ``activity``."""
        signer = signer or activity["actor"]
        body = json.dumps(activity).encode("utf-8")
        headers = sign_request(
            method="POST",
            url=url,
            body=body,
            key_id=f"{signer}#main-key",
            private_key_hex=self.keys[signer].encode().hex(),
            now=now,
        )
        headers["Content-Type"] = "application/activity+json"
        return InboundRequest(method="POST", path=urlsplit(url).path, headers=headers, body=body)


@pytest.fixture
def settings(tmp_path: Path) -> FederationSettings:
    return FederationSettings(
        hostname=LOCAL_HOST,
        protocol="https",
        database_url=f"sqlite+pysqlite:///{tmp_path / 'federation.db'}",
        http_fetch_retries=0,
        http_retry_delay=0.0,
        delivery_max_retries=0,
        delivery_retry_delay_seconds=0.0,
    )


@pytest.fixture
def db(settings: FederationSettings):
    manager = DatabaseSessionManager(settings.database_url)
    manager.create_all()
    yield manager
    manager.dispose()


@pytest.fixture
def repository(db: DatabaseSessionManager) -> FederationRepository:
    return FederationRepository(db)


@pytest.fixture
def policy(settings: FederationSettings) -> FederationPolicy:
    return FederationPolicy.from_settings(settings)


@pytest.fixture
def translator() -> ActivityPubTranslator:
    return ActivityPubTranslator(LOCAL_BASE)


@pytest.fixture
def actors(settings: FederationSettings, repository: FederationRepository) -> LocalActorService:
    return LocalActorService(settings=settings, repository=repository)


@pytest.fixture
def remote() -> RemoteWeb:
    return RemoteWeb()


@pytest.fixture
def client(settings: FederationSettings, remote: RemoteWeb) -> ActivityPubClient:
    return ActivityPubClient.from_settings(settings, transport=remote.transport)


@pytest.fixture
def resolver(settings, repository, client, policy, translator) -> Resolver:
    return Resolver(
        settings=settings,
        repository=repository,
        client=client,
        policy=policy,
        translator=translator,
    )


@pytest.fixture
def cache_actor(repository: FederationRepository, translator: ActivityPubTranslator) -> Callable[..., CachedActor]:
    """Stores a remote actor document as if it had been fetched ``age`` seconds ago."""

    def _cache(document: Dict[str, Any], age: float = 0.0) -> CachedActor:
        values = translator.actor_values(
            ActorDocument.model_validate(document), refreshed_at=int(time.time() - age)
        )
        actor = repository.upsert_actor(values)
        moderators = document.get("attributedTo")
        if moderators:
            repository.replace_moderators(actor.ap_id, moderators)
        return actor

    return _cache


@pytest.fixture
def local_post(repository: FederationRepository) -> Callable[..., Any]:
    """Stores content authored on this instance."""

    def _store(kind: str, number: int, creator: str, **values: Any):
        path = {"post": "post", "comment": "comment", "private_message": "private_message"}[kind]
        row = {
            "ap_id": f"{LOCAL_BASE}/{path}/{number}",
            "kind": kind,
            "creator_ap_id": creator,
            "local": True,
            "published": int(time.time()),
        }
        row.update(values)
        return repository.upsert_object(row)

    return _store
