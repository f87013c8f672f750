import asyncio
import logging

import pytest

from forum_federation.core.event_bus import APPLIED, AppliedEvent, EventBus


@pytest.mark.asyncio
async def test_sync_and_async_subscribers_receive_events():
    bus = EventBus()
    seen = []

    async def record_async(event):
        seen.append(("async", event.kind))

    bus.subscribe(APPLIED, lambda event: seen.append(("sync", event.kind)))
    bus.subscribe(APPLIED, record_async)

    await bus.on_applied(object(), "post.created")
    await bus.drain()

    assert sorted(seen) == [("async", "post.created"), ("sync", "post.created")]


@pytest.mark.asyncio
async def test_failing_async_subscriber_is_logged(caplog):
    bus = EventBus()

    async def broken(event):
        raise RuntimeError("subscriber exploded")

    bus.subscribe(APPLIED, broken)
    with caplog.at_level(logging.ERROR, logger="forum_federation.core.event_bus"):
        await bus.publish(APPLIED, AppliedEvent(object=None, kind="post.created"))
        await bus.drain()
        # Done callbacks run on the loop after the task finishes.
        await asyncio.sleep(0)

    assert "Subscriber for applied failed" in caplog.text
    assert "subscriber exploded" in caplog.text


@pytest.mark.asyncio
async def test_failing_sync_subscriber_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise ValueError("nope")

    bus.subscribe(APPLIED, broken)
    bus.subscribe(APPLIED, seen.append)

    await bus.publish(APPLIED, "payload")

    assert seen == ["payload"]
