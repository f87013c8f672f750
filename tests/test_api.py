import json

import pytest
from fastapi.testclient import TestClient

from forum_federation.app import create_app
from forum_federation.schemas import PUBLIC

LOCAL_BASE = "https://forum.example"
CAROL = "https://remote.example/u/carol"


@pytest.fixture
def app(settings, remote):
    return create_app(settings, fetch_transport=remote.transport, delivery_transport=remote.transport)


@pytest.fixture
def client(app):
    with TestClient(app, base_url=LOCAL_BASE) as client:
        yield client


@pytest.fixture
def local_actors(app):
    service = app.state.actor_service
    alice = service.register("person", "alice", display_name="Alice")
    community = service.register("community", "c1", summary="The first community")
    app.state.repository.set_moderator(community.ap_id, alice.ap_id, active=True)
    return alice, community


def _post_signed(client, request):
    return client.post(
        f"{LOCAL_BASE}{request.path}", content=request.body, headers=request.headers
    )


def test_liveness(client):
    response = client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"status": "alive", "service": "forum-federation"}


def test_readiness(client):
    response = client.get("/health/ready")
    assert response.status_code == 200
    body = response.json()
    assert body["checks"] == {"database": True, "delivery_queue": True}
    assert body["queue"] == {"pending": 0, "in_flight": 0}


def test_webfinger(client, local_actors):
    response = client.get("/.well-known/webfinger", params={"resource": "acct:alice@forum.example"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/jrd+json")
    [link] = response.json()["links"]
    assert link["href"] == f"{LOCAL_BASE}/u/alice"
    assert link["type"] == "application/activity+json"


@pytest.mark.parametrize(
    "resource, status_code",
    [
        ("acct:nobody@forum.example", 404),
        ("acct:alice@elsewhere.example", 404),
        ("alice@forum.example", 400),
        ("acct:alice", 400),
    ],
)
def test_webfinger_misses(client, local_actors, resource, status_code):
    response = client.get("/.well-known/webfinger", params={"resource": resource})
    assert response.status_code == status_code


def test_person_document(client, local_actors):
    response = client.get("/u/alice")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/activity+json")
    document = response.json()
    assert document["type"] == "Person"
    assert document["preferredUsername"] == "alice"
    assert document["publicKey"]["id"] == f"{LOCAL_BASE}/u/alice#main-key"
    assert "privateKey" not in json.dumps(document)


def test_community_document_and_moderators(client, local_actors):
    alice, community = local_actors

    group = client.get("/c/c1").json()
    moderators = client.get("/c/c1/moderators").json()

    assert group["type"] == "Group"
    assert moderators["orderedItems"] == [alice.ap_id]


def test_site_actor(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["id"] == f"{LOCAL_BASE}/"
    assert response.json()["type"] == "Application"


def test_unknown_actor_is_not_found(client):
    assert client.get("/u/nobody").status_code == 404
    assert client.get("/unknown/thing").status_code == 404


def test_deleted_post_is_a_tombstone(app, client, local_actors):
    alice, community = local_actors
    app.state.repository.upsert_object(
        {
            "ap_id": f"{LOCAL_BASE}/post/1",
            "kind": "post",
            "creator_ap_id": alice.ap_id,
            "community_ap_id": community.ap_id,
            "name": "Gone",
            "local": True,
            "deleted": True,
        }
    )

    response = client.get("/post/1")

    assert response.status_code == 410
    assert response.json()["type"] == "Tombstone"


def test_sensitive_activities_are_not_served(app, client, local_actors):
    alice, _ = local_actors
    repository = app.state.repository
    for uuid, sensitive in (("public-one", False), ("private-one", True)):
        repository.record_activity(
            ap_id=f"{LOCAL_BASE}/activities/create/{uuid}",
            kind="Create",
            actor_ap_id=alice.ap_id,
            data={"id": f"{LOCAL_BASE}/activities/create/{uuid}", "type": "Create"},
            local=True,
            sensitive=sensitive,
        )

    assert client.get("/activities/create/public-one").status_code == 200
    assert client.get("/activities/create/private-one").status_code == 404


def test_follow_is_accepted_and_answered(app, settings, remote, local_actors):
    _, community = local_actors
    remote.actor("person", "carol")
    follow = {
        "id": "https://remote.example/activities/follow/1",
        "type": "Follow",
        "actor": CAROL,
        "to": [community.ap_id],
        "object": community.ap_id,
    }
    request = remote.sign(follow)

    with TestClient(app, base_url=LOCAL_BASE) as client:
        first = _post_signed(client, request)
        second = _post_signed(client, request)
        assert app.state.repository.get_follow(community.ap_id, CAROL).pending is False

    assert first.status_code == 202
    assert first.json() == {"status": "accepted", "activity_id": follow["id"]}
    assert second.status_code == 202
    assert second.json()["status"] == "duplicate"
    [accept] = remote.posted()
    assert str(accept.url) == "https://remote.example/inbox"
    payload = json.loads(accept.content)
    assert payload["type"] == "Accept"
    assert payload["object"]["id"] == follow["id"]


def test_personal_inbox(app, remote, local_actors):
    alice, _ = local_actors
    remote.actor("person", "carol")
    follow = {
        "id": "https://remote.example/activities/follow/2",
        "type": "Follow",
        "actor": CAROL,
        "object": alice.ap_id,
    }
    request = remote.sign(follow, url=f"{LOCAL_BASE}/u/alice/inbox")

    with TestClient(app, base_url=LOCAL_BASE) as client:
        response = _post_signed(client, request)
        missing = _post_signed(client, remote.sign(follow, url=f"{LOCAL_BASE}/u/nobody/inbox"))

    assert response.status_code == 202
    assert missing.status_code == 404


def test_unsigned_activity_is_unauthorized(client, local_actors):
    _, community = local_actors
    body = {
        "id": "https://remote.example/activities/like/1",
        "type": "Like",
        "actor": CAROL,
        "to": [PUBLIC],
        "object": f"{LOCAL_BASE}/post/1",
    }

    response = client.post(f"{LOCAL_BASE}/inbox", json=body)

    assert response.status_code == 401
    assert response.json()["detail"].startswith("invalid_signature")


def test_malformed_activity_is_bad_request(client):
    response = client.post(f"{LOCAL_BASE}/inbox", content=b"[]")
    assert response.status_code == 400
