from __future__ import annotations

import json
from typing import Any, Dict, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import CachedActor
from forum_federation.db.repository import FederationRepository
from forum_federation.models import InboundRequest
from forum_federation.schemas import ACTIVITY_CONTEXT
from forum_federation.services import (
    ActivityPubTranslator,
    InboxOutcome,
    InboxService,
    LocalActorService,
    Rejection,
)
from forum_federation.services.actors import ACTOR_PATHS
from forum_federation.services.translator import ACTOR_TYPE_BY_KIND


router = APIRouter(tags=["activitypub", "v1"])

ACTIVITY_JSON = "application/activity+json"

STATUS_BY_REJECTION = {
    Rejection.MALFORMED: status.HTTP_400_BAD_REQUEST,
    Rejection.INVALID_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    Rejection.DOMAIN_MISMATCH: status.HTTP_403_FORBIDDEN,
    Rejection.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    Rejection.UNKNOWN_RECIPIENT: status.HTTP_404_NOT_FOUND,
}
KIND_BY_PATH = {path: kind for kind, path in ACTOR_PATHS.items()}


def get_inbox_service(request: Request) -> InboxService:
    """Dependency to get the InboxService instance from the FastAPI app state."""
    service: InboxService = request.app.state.inbox_service
    return service


def get_repository(request: Request) -> FederationRepository:
    return request.app.state.repository


def get_translator(request: Request) -> ActivityPubTranslator:
    return request.app.state.translator


def get_actor_service(request: Request) -> LocalActorService:
    return request.app.state.actor_service


def get_settings(request: Request) -> FederationSettings:
    return request.app.state.settings


def activity_json(document: Dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(content=document, status_code=status_code, media_type=ACTIVITY_JSON)


async def _inbound_request(request: Request) -> InboundRequest:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return InboundRequest(
        method=request.method,
        path=path,
        headers=dict(request.headers),
        body=await request.body(),
    )


def _inbox_response(outcome: InboxOutcome) -> Dict[str, Any]:
    """Maps an inbox outcome to the response body, raising for rejections."""
    if outcome.rejection is not None:
        detail = outcome.rejection.value
        if outcome.sub_reason:
            detail = f"{detail}: {outcome.sub_reason}"
        raise HTTPException(status_code=STATUS_BY_REJECTION[outcome.rejection], detail=detail)
    return {
        "status": "duplicate" if outcome.replay else "accepted",
        "activity_id": outcome.activity_id,
    }


def _local_actor(
    repository: FederationRepository, actors: LocalActorService, kind: str, name: str
) -> CachedActor:
    actor = repository.get_actor(actors.actor_id(kind, name))
    if actor is None or not actor.local:
        raise HTTPException(status_code=404, detail=f"{kind} not found")
    return actor


@router.post("/inbox", status_code=status.HTTP_202_ACCEPTED)
async def shared_inbox(
    request: Request,
    service: InboxService = Depends(get_inbox_service),
):
    """Receives an activity addressed to the instance's shared inbox.

    Args:
        request: The incoming FastAPI request object.
        service: The InboxService instance.

    Returns:
        A dictionary indicating whether the activity was accepted or already known.

    Raises:
        HTTPException: 400 for malformed activities, 401 for bad signatures,
                       403 for domain mismatches and policy refusals.
    """
    outcome = await service.receive(await _inbound_request(request))
    return _inbox_response(outcome)


@router.post("/{actor_path}/{name}/inbox", status_code=status.HTTP_202_ACCEPTED)
async def actor_inbox(
    actor_path: str,
    name: str,
    request: Request,
    service: InboxService = Depends(get_inbox_service),
    actors: LocalActorService = Depends(get_actor_service),
):
    """Receives an activity addressed to one local person, community or feed.

    Raises:
        HTTPException: 404 if no such local actor exists, otherwise as for
                       the shared inbox.
    """
    kind = KIND_BY_PATH.get(actor_path)
    if kind is None:
        raise HTTPException(status_code=404, detail="unknown inbox")
    outcome = await service.receive(
        await _inbound_request(request), recipient=actors.actor_id(kind, name)
    )
    return _inbox_response(outcome)


@router.get("/.well-known/webfinger")
async def webfinger(
    resource: str = Query(...),
    repository: FederationRepository = Depends(get_repository),
    settings: FederationSettings = Depends(get_settings),
):
    """Resolves ``acct:name@domain`` to the local actors with that name.

    Raises:
        HTTPException: 400 for a malformed resource, 404 when no local actor matches.
    """
    name, domain = _parse_acct(resource)
    if domain not in (settings.hostname, settings.domain):
        raise HTTPException(status_code=404, detail="unknown domain")
    links = []
    for kind in ("person", "community", "feed"):
        actor = repository.get_local_actor(kind, name)
        if actor is None or actor.deleted:
            continue
        links.append(
            {
                "rel": "self",
                "type": ACTIVITY_JSON,
                "href": actor.ap_id,
                "properties": {
                    "https://www.w3.org/ns/activitystreams#type": ACTOR_TYPE_BY_KIND[kind]
                },
            }
        )
    if not links:
        raise HTTPException(status_code=404, detail="no such actor")
    return JSONResponse(
        content={"subject": resource, "links": links},
        media_type="application/jrd+json",
    )


def _parse_acct(resource: str) -> Tuple[str, str]:
    account = resource[len("acct:"):] if resource.startswith("acct:") else ""
    name, _, domain = account.partition("@")
    if not name or not domain or "@" in domain:
        raise HTTPException(status_code=400, detail="resource must be acct:name@domain")
    return name, domain


@router.get("/")
async def site_actor(
    repository: FederationRepository = Depends(get_repository),
    translator: ActivityPubTranslator = Depends(get_translator),
    settings: FederationSettings = Depends(get_settings),
):
    """Returns the instance's site actor, the signer of fetches and instance-wide bans."""
    actor = repository.get_site_actor(settings.domain)
    if actor is None or not actor.local:
        raise HTTPException(status_code=404, detail="site actor not initialised")
    return activity_json(translator.actor_document(actor))


@router.get("/activities/{kind}/{activity_uuid}")
async def get_activity(
    kind: str,
    activity_uuid: str,
    repository: FederationRepository = Depends(get_repository),
    settings: FederationSettings = Depends(get_settings),
):
    """Returns an activity this instance sent, unless it is marked sensitive."""
    record = repository.get_activity(f"{settings.base_url}/activities/{kind}/{activity_uuid}")
    if record is None or not record.local or record.sensitive:
        raise HTTPException(status_code=404, detail="activity not found")
    return activity_json(json.loads(record.data))


@router.get("/{path}/{name}")
async def get_document(
    path: str,
    name: str,
    repository: FederationRepository = Depends(get_repository),
    translator: ActivityPubTranslator = Depends(get_translator),
    actors: LocalActorService = Depends(get_actor_service),
    settings: FederationSettings = Depends(get_settings),
):
    """Returns a local actor (``/u``, ``/c``, ``/feeds``) or a local post or comment.

    Deleted actors and deleted or removed content are answered with a
    Tombstone and status 410.
    """
    kind = KIND_BY_PATH.get(path)
    if kind is not None:
        actor = _local_actor(repository, actors, kind, name)
        if actor.deleted:
            return _tombstone(actor.ap_id)
        moderators = repository.list_moderators(actor.ap_id) if kind == "community" else ()
        return activity_json(translator.actor_document(actor, moderators=moderators))

    if path not in ("post", "comment"):
        raise HTTPException(status_code=404, detail="not found")
    obj = repository.get_object(f"{settings.base_url}/{path}/{name}")
    if obj is None or not obj.local or obj.kind != path:
        raise HTTPException(status_code=404, detail=f"{path} not found")
    if obj.deleted or obj.removed:
        return _tombstone(obj.ap_id)
    community = repository.get_actor(obj.community_ap_id) if obj.community_ap_id else None
    if community is not None and community.visibility == "private":
        # Content of private communities only reaches accepted followers by delivery.
        raise HTTPException(status_code=404, detail=f"{path} not found")
    return activity_json(translator.object_document(obj))


@router.get("/{path}/{name}/followers")
async def get_followers(
    path: str,
    name: str,
    repository: FederationRepository = Depends(get_repository),
    actors: LocalActorService = Depends(get_actor_service),
):
    """Returns the follower count of a local actor; individual followers stay private."""
    kind = KIND_BY_PATH.get(path)
    if kind is None:
        raise HTTPException(status_code=404, detail="not found")
    actor = _local_actor(repository, actors, kind, name)
    return activity_json(
        {
            "@context": list(ACTIVITY_CONTEXT),
            "id": actor.followers_url,
            "type": "Collection",
            "totalItems": len(repository.list_followers(actor.ap_id)),
            "items": [],
        }
    )


@router.get("/c/{name}/moderators")
async def get_moderators(
    name: str,
    repository: FederationRepository = Depends(get_repository),
    actors: LocalActorService = Depends(get_actor_service),
):
    """Returns the moderators of a local community in order."""
    community = _local_actor(repository, actors, "community", name)
    moderators = repository.list_moderators(community.ap_id)
    return activity_json(
        {
            "@context": list(ACTIVITY_CONTEXT),
            "id": f"{community.ap_id}/moderators",
            "type": "OrderedCollection",
            "totalItems": len(moderators),
            "orderedItems": moderators,
        }
    )


def _tombstone(ap_id: str) -> JSONResponse:
    return activity_json(
        {"@context": list(ACTIVITY_CONTEXT), "id": ap_id, "type": "Tombstone"},
        status_code=status.HTTP_410_GONE,
    )
