import pytest

from forum_federation.models.events import (
    CommentCreated,
    FollowAccepted,
    FollowRequested,
    PostCreated,
    PostLocked,
    PrivateMessageCreated,
    VoteCast,
)
from forum_federation.schemas import PUBLIC
from forum_federation.services.audience import AudienceResolver
from forum_federation.services.builder import BuildError, MessageBuilder
from forum_federation.services.mentions import MentionResolver, scrape_mentions

BOB = "https://other.example/u/bob"
CAROL = "https://remote.example/u/carol"


@pytest.fixture
def builder(settings, repository, resolver, client, translator):
    return MessageBuilder(
        settings=settings,
        repository=repository,
        resolver=resolver,
        mentions=MentionResolver(resolver=resolver, client=client),
        translator=translator,
    )


@pytest.fixture
def community(actors):
    return actors.register("community", "c1")


@pytest.fixture
def alice(actors):
    return actors.register("person", "alice")


def test_scrape_mentions_deduplicates_handles():
    mentions = scrape_mentions("hi @bob@other.example and @Bob@OTHER.example, also @bob@other.example")
    assert [mention.handle for mention in mentions] == ["@bob@other.example", "@Bob@OTHER.example"]


@pytest.mark.asyncio
async def test_comment_mentioning_remote_user(
    builder, repository, remote, cache_actor, local_post, community, alice, settings, policy
):
    remote.actor("person", "bob", domain="other.example")
    follower = cache_actor(remote.actor("person", "carol"))
    repository.upsert_follow(community.ap_id, follower.ap_id, pending=False)
    post = local_post("post", 1, alice.ap_id, community_ap_id=community.ap_id, name="Hello")
    comment = local_post(
        "comment",
        1,
        alice.ap_id,
        community_ap_id=community.ap_id,
        post_ap_id=post.ap_id,
        content="Thanks @bob@other.example",
    )

    messages = await builder.build(CommentCreated(actor_ap_id=alice.ap_id, comment_ap_id=comment.ap_id))

    assert len(messages) == 1
    message = messages[0]
    assert message.kind == "Create"
    assert message.object_ap_id == comment.ap_id
    assert message.cc == (community.ap_id, BOB)
    assert message.payload["object"]["tag"] == [
        {"type": "Mention", "href": BOB, "name": "@bob@other.example"}
    ]
    assert message.audience.followers_of_community == community.ap_id
    inboxes = AudienceResolver(settings=settings, repository=repository, policy=policy).resolve(
        message.audience
    )
    assert inboxes == ["https://other.example/inbox", "https://remote.example/inbox"]


@pytest.mark.asyncio
async def test_reply_to_remote_author_copies_the_author(
    builder, remote, cache_actor, local_post, community, alice
):
    carol = cache_actor(remote.actor("person", "carol"))
    post = local_post("post", 1, carol.ap_id, community_ap_id=community.ap_id, name="Hello")
    comment = local_post(
        "comment", 2, alice.ap_id, community_ap_id=community.ap_id, post_ap_id=post.ap_id, content="hi"
    )

    [message] = await builder.build(CommentCreated(actor_ap_id=alice.ap_id, comment_ap_id=comment.ap_id))

    assert message.cc == (community.ap_id, CAROL)
    assert "https://remote.example/inbox" in message.audience.inboxes
    assert message.payload["object"]["inReplyTo"] == post.ap_id
    assert message.payload["to"] == [PUBLIC]


@pytest.mark.asyncio
async def test_post_is_addressed_to_its_community(builder, local_post, community, alice):
    post = local_post("post", 1, alice.ap_id, community_ap_id=community.ap_id, name="Hello")

    [message] = await builder.build(PostCreated(actor_ap_id=alice.ap_id, post_ap_id=post.ap_id))

    assert message.payload["to"] == [community.ap_id, PUBLIC]
    assert message.payload["object"]["type"] == "Page"
    assert message.payload["object"]["audience"] == community.ap_id
    assert message.audience.inboxes == (community.inbox_url,)


@pytest.mark.asyncio
async def test_vote_retraction_is_an_undo(builder, local_post, community, alice):
    post = local_post("post", 1, alice.ap_id, community_ap_id=community.ap_id, name="Hello")

    [message] = await builder.build(VoteCast(actor_ap_id=alice.ap_id, object_ap_id=post.ap_id, score=0))

    assert message.kind == "Undo"
    assert message.payload["object"]["type"] == "Like"
    assert message.payload["object"]["object"] == post.ap_id


@pytest.mark.asyncio
async def test_moderator_lock_and_unlock(builder, local_post, community, alice):
    post = local_post("post", 1, alice.ap_id, community_ap_id=community.ap_id, name="Hello")

    [lock] = await builder.build(
        PostLocked(moderator_ap_id=alice.ap_id, post_ap_id=post.ap_id, reason="off topic")
    )
    [unlock] = await builder.build(
        PostLocked(moderator_ap_id=alice.ap_id, post_ap_id=post.ap_id, locked=False)
    )

    assert lock.kind == "Lock"
    assert lock.payload["object"] == post.ap_id
    assert lock.payload["summary"] == "off topic"
    assert lock.audience.followers_of_community == community.ap_id
    assert unlock.kind == "Undo"
    assert unlock.payload["object"]["type"] == "Lock"
    assert unlock.object_ap_id == post.ap_id


@pytest.mark.asyncio
async def test_invalid_vote_score_is_a_build_error(builder, local_post, community, alice):
    post = local_post("post", 1, alice.ap_id, community_ap_id=community.ap_id, name="Hello")
    with pytest.raises(BuildError):
        await builder.build(VoteCast(actor_ap_id=alice.ap_id, object_ap_id=post.ap_id, score=2))


@pytest.mark.asyncio
async def test_private_message_to_local_user_is_not_federated(builder, actors, local_post, alice):
    dave = actors.register("person", "dave")
    message = local_post("private_message", 1, alice.ap_id, recipient_ap_id=dave.ap_id, content="hi")

    assert await builder.build(
        PrivateMessageCreated(actor_ap_id=alice.ap_id, message_ap_id=message.ap_id)
    ) == []


@pytest.mark.asyncio
async def test_private_message_to_remote_user_is_sensitive(
    builder, remote, cache_actor, local_post, alice
):
    carol = cache_actor(remote.actor("person", "carol"))
    message = local_post("private_message", 1, alice.ap_id, recipient_ap_id=carol.ap_id, content="hi")

    [outgoing] = await builder.build(
        PrivateMessageCreated(actor_ap_id=alice.ap_id, message_ap_id=message.ap_id)
    )

    assert outgoing.sensitive is True
    assert outgoing.payload["to"] == [CAROL]
    assert outgoing.audience.inboxes == ("https://remote.example/inbox",)


@pytest.mark.asyncio
async def test_follow_of_remote_community(builder, remote, cache_actor, alice):
    news = cache_actor(remote.actor("community", "news"))

    [message] = await builder.build(FollowRequested(follower_ap_id=alice.ap_id, target_ap_id=news.ap_id))

    assert message.kind == "Follow"
    assert message.payload["object"] == news.ap_id
    assert message.audience.inboxes == (news.inbox_url,)


@pytest.mark.asyncio
async def test_accept_embeds_the_follow(builder, remote, cache_actor, community):
    carol = cache_actor(remote.actor("person", "carol"))
    follow_id = "https://remote.example/activities/follow/1"

    [message] = await builder.build(
        FollowAccepted(target_ap_id=community.ap_id, follower_ap_id=carol.ap_id, follow_id=follow_id)
    )

    assert message.kind == "Accept"
    assert message.payload["object"] == {
        "id": follow_id,
        "type": "Follow",
        "actor": carol.ap_id,
        "object": community.ap_id,
    }


@pytest.mark.asyncio
async def test_remote_actor_cannot_author_outgoing_messages(builder, remote, cache_actor, local_post, community):
    carol = cache_actor(remote.actor("person", "carol"))
    post = local_post("post", 1, carol.ap_id, community_ap_id=community.ap_id, name="Hello")

    with pytest.raises(BuildError):
        await builder.build(PostCreated(actor_ap_id=carol.ap_id, post_ap_id=post.ap_id))


def test_announce_skips_the_origin_instance(builder, community):
    activity = {
        "id": "https://remote.example/activities/create/1",
        "type": "Create",
        "actor": CAROL,
        "object": {"id": "https://remote.example/post/1", "type": "Page"},
    }

    message = builder.build_announce(community, activity, "remote.example")

    assert message.kind == "Announce"
    assert message.object_ap_id == "https://remote.example/post/1"
    assert message.payload["object"] == activity
    assert message.audience.exclude_domains == frozenset({"remote.example"})
    assert message.audience.followers_of_community == community.ap_id
