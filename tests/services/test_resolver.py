import pytest

from forum_federation.core.policy import FederationPolicy
from forum_federation.services.resolver import (
    InvalidReference,
    NotAnExpectedType,
    RecursionBudget,
    RecursionExceeded,
    Resolver,
    is_stale,
)

ALICE = "https://remote.example/u/alice"
NEWS = "https://remote.example/c/news"


def test_is_stale_after_interval():
    assert not is_stale(1_000, 1_500, 600)
    assert is_stale(1_000, 1_601, 600)


def test_budget_refuses_spending_past_its_limit():
    budget = RecursionBudget(limit=2)
    budget.spend()
    budget.spend()
    assert budget.remaining == 0
    with pytest.raises(RecursionExceeded):
        budget.spend()


@pytest.mark.asyncio
async def test_fresh_cached_actor_is_not_fetched(resolver, remote, cache_actor):
    cache_actor(remote.actor("person", "alice"))

    actor = await resolver.resolve_person(ALICE, resolver.new_budget())

    assert actor.ap_id == ALICE
    assert remote.fetched() == []


@pytest.mark.asyncio
async def test_unknown_actor_is_fetched_once(resolver, remote, repository):
    remote.actor("person", "alice", name="Alice")

    first = await resolver.resolve_person(ALICE, resolver.new_budget())
    second = await resolver.resolve_person(ALICE, resolver.new_budget())

    assert first.display_name == "Alice"
    assert second.id == first.id
    assert remote.fetched() == [ALICE]
    assert repository.get_actor(ALICE).local is False


@pytest.mark.asyncio
async def test_stale_actor_is_refreshed(resolver, remote, cache_actor, settings):
    document = remote.actor("person", "alice", name="Old name")
    cache_actor(document, age=settings.actor_refresh_interval_seconds + 60)
    document["name"] = "New name"

    actor = await resolver.resolve_person(ALICE, resolver.new_budget())

    assert actor.display_name == "New name"
    assert remote.fetched() == [ALICE]


@pytest.mark.asyncio
async def test_stale_actor_falls_back_to_cache_when_refresh_fails(
    resolver, remote, cache_actor, settings
):
    cache_actor(
        remote.actor("person", "alice", name="Cached"),
        age=settings.actor_refresh_interval_seconds + 60,
    )
    remote.unavailable.add("remote.example")

    actor = await resolver.resolve_person(ALICE, resolver.new_budget())

    assert actor.display_name == "Cached"
    assert actor.deleted is False


@pytest.mark.asyncio
async def test_stale_actor_that_is_gone_is_marked_deleted(
    resolver, remote, cache_actor, settings
):
    cache_actor(
        remote.actor("person", "alice"), age=settings.actor_refresh_interval_seconds + 60
    )
    del remote.documents[ALICE]

    actor = await resolver.resolve_person(ALICE, resolver.new_budget())

    assert actor.deleted is True


@pytest.mark.asyncio
async def test_comment_chain_is_bounded_by_fetch_budget(resolver, remote, settings):
    remote.actor("person", "alice")
    remote.actor("community", "news")
    remote.post("https://remote.example/post/1", ALICE, NEWS)
    parent = "https://remote.example/post/1"
    for number in range(1, settings.max_fetch_requests + 3):
        ap_id = f"https://remote.example/comment/{number}"
        remote.comment(ap_id, ALICE, parent)
        parent = ap_id

    with pytest.raises(RecursionExceeded):
        await resolver.resolve_object(parent, resolver.new_budget())
    assert len(remote.fetched()) == settings.max_fetch_requests


@pytest.mark.asyncio
async def test_comment_resolves_post_and_community(resolver, remote, repository):
    remote.actor("person", "alice")
    remote.actor("community", "news")
    remote.post("https://remote.example/post/1", ALICE, NEWS)
    remote.comment("https://remote.example/comment/1", ALICE, "https://remote.example/post/1")

    comment = await resolver.resolve_object(
        "https://remote.example/comment/1", resolver.new_budget(), kind="comment"
    )

    assert comment.post_ap_id == "https://remote.example/post/1"
    assert comment.parent_ap_id is None
    assert comment.community_ap_id == NEWS
    assert repository.get_actor(NEWS).kind == "community"


@pytest.mark.asyncio
async def test_community_records_moderators_without_fetching_them(resolver, remote, repository):
    remote.actor("community", "news", attributedTo=[ALICE, "https://other.example/u/bob"])

    await resolver.resolve_community(NEWS, resolver.new_budget())

    assert repository.list_moderators(NEWS) == [ALICE, "https://other.example/u/bob"]
    assert remote.fetched() == [NEWS]


@pytest.mark.asyncio
async def test_unknown_local_reference_is_invalid(resolver, remote):
    with pytest.raises(InvalidReference):
        await resolver.resolve("https://forum.example/post/404", resolver.new_budget())
    assert remote.fetched() == []


@pytest.mark.asyncio
async def test_blocked_domain_is_never_fetched(settings, repository, client, translator, remote):
    policy = FederationPolicy(
        local_domain="forum.example", protocol="https", blocked=frozenset({"remote.example"})
    )
    resolver = Resolver(
        settings=settings, repository=repository, client=client, policy=policy, translator=translator
    )
    remote.actor("person", "alice")

    with pytest.raises(InvalidReference):
        await resolver.resolve(ALICE, resolver.new_budget())
    assert remote.fetched() == []


@pytest.mark.asyncio
async def test_wrong_kind_is_reported(resolver, remote):
    remote.actor("person", "alice")
    with pytest.raises(NotAnExpectedType):
        await resolver.resolve_community(ALICE, resolver.new_budget())


@pytest.mark.asyncio
async def test_document_claiming_local_id_is_refused(resolver):
    with pytest.raises(InvalidReference):
        await resolver.upsert_from_document(
            {"id": "https://forum.example/u/mallory", "type": "Person"}, resolver.new_budget()
        )
