import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest

from forum_federation.core.event_bus import PERSISTENCE_FAILED, EventBus
from forum_federation.core.security import verify_request
from forum_federation.db.repository import PersistenceFailure
from forum_federation.models.outgoing import Audience, OutgoingMessage
from forum_federation.schemas import PUBLIC
from forum_federation.services.audience import AudienceResolver
from forum_federation.services.delivery import (
    CircuitBreaker,
    DeliveryQueue,
    DeliveryResult,
    HttpTransport,
    SignedRequest,
)

INBOX = "https://remote.example/inbox"
POST = "https://forum.example/post/1"


def _request(url: str = INBOX) -> SignedRequest:
    return SignedRequest(activity_id="https://forum.example/activities/like/1", url=url, body=b"{}")


def _transport(handler, **kwargs) -> HttpTransport:
    kwargs.setdefault("max_retries", 0)
    kwargs.setdefault("retry_delay", 0.0)
    return HttpTransport(transport=httpx.MockTransport(handler), **kwargs)


def _message(translator, actor_ap_id, kind, object_ap_id=POST, inboxes=(INBOX,), **kwargs):
    payload = translator.activity(kind, actor_ap_id, object_ap_id, to=[PUBLIC])
    return OutgoingMessage(
        id=payload["id"],
        kind=kind,
        actor_ap_id=actor_ap_id,
        object_ap_id=object_ap_id,
        payload=payload,
        audience=Audience(inboxes=tuple(inboxes)),
        **kwargs,
    )


@pytest.fixture
def alice(actors):
    return actors.register("person", "alice")


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def make_queue(settings, repository, policy, event_bus):
    def _make(handler, repo=None, queue_settings=None):
        transport = _transport(handler)
        queue_settings = queue_settings or settings
        return DeliveryQueue(
            settings=queue_settings,
            repository=repo or repository,
            audience=AudienceResolver(settings=queue_settings, repository=repository, policy=policy),
            transport=transport,
            event_bus=event_bus,
        )

    return _make


class TestHttpTransport:
    @pytest.mark.asyncio
    async def test_success(self):
        transport = _transport(lambda request: httpx.Response(202))
        assert await transport.deliver(_request()) is DeliveryResult.OK
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        transport = _transport(handler, max_retries=2)
        assert await transport.deliver(_request()) is DeliveryResult.RETRYABLE
        assert len(calls) == 3
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        statuses = iter([503, 429, 200])
        transport = _transport(lambda request: httpx.Response(next(statuses)), max_retries=3)
        assert await transport.deliver(_request()) is DeliveryResult.OK
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_client_errors_are_fatal(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        transport = _transport(handler, max_retries=2)
        assert await transport.deliver(_request()) is DeliveryResult.FATAL
        assert len(calls) == 1
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_connection_errors_are_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = _transport(handler)
        assert await transport.deliver(_request()) is DeliveryResult.RETRYABLE
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_open_breaker_delays_instead_of_dropping(self):
        statuses = iter([503, 503, 503, 202])
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(next(statuses))

        transport = _transport(
            handler, max_retries=3, breaker_threshold=2, breaker_timeout=0.05
        )
        assert await transport.deliver(_request()) is DeliveryResult.OK
        assert len(calls) == 4
        assert transport.breaker("remote.example").state == "CLOSED"
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_instance_recovers_after_outage(self):
        status = [503]
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status[0])

        transport = _transport(
            handler, max_retries=2, breaker_threshold=2, breaker_timeout=0.05
        )
        assert await transport.deliver(_request()) is DeliveryResult.RETRYABLE
        assert len(calls) == 3

        status[0] = 202
        assert await transport.deliver(_request()) is DeliveryResult.OK
        assert len(calls) == 4
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_backoff_does_not_hold_a_delivery_slot(self):
        down = "https://down.example/inbox"
        up = "https://up.example/inbox"
        posted = []

        def handler(request):
            posted.append(str(request.url))
            return httpx.Response(503 if request.url.host == "down.example" else 202)

        transport = _transport(handler, max_retries=2, retry_delay=0.05, max_concurrency=1)
        results = await asyncio.gather(
            transport.deliver(_request(down)), transport.deliver(_request(up))
        )

        assert results == [DeliveryResult.RETRYABLE, DeliveryResult.OK]
        last_down = max(i for i, url in enumerate(posted) if url == down)
        assert posted.index(up) < last_down
        await transport.aclose()


def test_circuit_breaker_half_opens_after_timeout():
    now = [1000.0]
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0, clock=lambda: now[0])

    breaker.on_failure()
    assert breaker.state == "OPEN"
    assert not breaker.can_execute()

    now[0] += 61
    assert breaker.can_execute()
    assert breaker.state == "HALF_OPEN"
    breaker.on_success()
    assert breaker.state == "CLOSED"


class TestDeliveryQueue:
    @pytest.mark.asyncio
    async def test_delivers_signed_activity(self, make_queue, translator, alice, repository):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(202)

        queue = make_queue(handler)
        message = _message(translator, alice.ap_id, "Like")

        assert await queue.process(message) == [INBOX]
        await queue.join()

        [request] = received
        assert request.headers["content-type"] == "application/activity+json"
        assert json.loads(request.content)["id"] == message.id
        verify_request(
            method="POST",
            path="/inbox",
            headers=dict(request.headers),
            body=request.content,
            public_key_hex=alice.public_key,
            max_age_seconds=300,
        )
        assert repository.activity_exists(message.id)

    @pytest.mark.asyncio
    async def test_recorded_message_is_not_resent(self, make_queue, translator, alice):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(202)

        queue = make_queue(handler)
        message = _message(translator, alice.ap_id, "Like")

        await queue.process(message)
        assert await queue.process(message) == []
        await queue.join()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_drops_the_message(self, make_queue, translator, alice, event_bus):
        failed = []
        event_bus.subscribe(PERSISTENCE_FAILED, failed.append)
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(202)

        broken = MagicMock()
        broken.record_activity.side_effect = PersistenceFailure("disk full")
        queue = make_queue(handler, repo=broken)
        message = _message(translator, alice.ap_id, "Like")

        assert await queue.process(message) == []
        await queue.join()

        assert failed == [message]
        assert received == []

    @pytest.mark.asyncio
    async def test_nothing_is_sent_while_federation_is_disabled(
        self, make_queue, translator, alice, repository, settings
    ):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(202)

        disabled = settings.model_copy(update={"federation_enabled": False})
        queue = make_queue(handler, queue_settings=disabled)
        message = _message(translator, alice.ap_id, "Like")

        assert await queue.process(message) == []
        assert repository.activity_exists(message.id)
        assert received == []

    @pytest.mark.asyncio
    async def test_messages_about_one_object_arrive_in_order(self, make_queue, translator, alice):
        arrived = []

        async def handler(request):
            kind = json.loads(request.content)["type"]
            if kind == "Create":
                await asyncio.sleep(0.05)
            arrived.append(kind)
            return httpx.Response(202)

        queue = make_queue(handler)
        await queue.process(_message(translator, alice.ap_id, "Create"))
        await queue.process(_message(translator, alice.ap_id, "Update"))
        await queue.join()

        assert arrived == ["Create", "Update"]

    @pytest.mark.asyncio
    async def test_messages_about_different_objects_do_not_wait(self, make_queue, translator, alice):
        arrived = []

        async def handler(request):
            kind = json.loads(request.content)["type"]
            if kind == "Create":
                await asyncio.sleep(0.05)
            arrived.append(kind)
            return httpx.Response(202)

        queue = make_queue(handler)
        await queue.process(_message(translator, alice.ap_id, "Create"))
        await queue.process(
            _message(translator, alice.ap_id, "Update", object_ap_id="https://forum.example/post/2")
        )
        await queue.join()

        assert arrived == ["Update", "Create"]

    @pytest.mark.asyncio
    async def test_stop_drains_submitted_messages(self, make_queue, translator, alice, repository):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(202)

        queue = make_queue(handler)
        await queue.start()
        assert queue.running

        message = _message(translator, alice.ap_id, "Like")
        await queue.submit(message)
        await queue.stop()

        assert not queue.running
        assert queue.pending == 0
        assert queue.in_flight == 0
        assert len(received) == 1
        assert repository.activity_exists(message.id)
