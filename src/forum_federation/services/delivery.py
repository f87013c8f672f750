from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Tuple

import httpx

from forum_federation.core.event_bus import PERSISTENCE_FAILED, EventBus
from forum_federation.core.policy import url_domain
from forum_federation.core.security import sign_request
from forum_federation.core.settings import FederationSettings
from forum_federation.db.models import CachedActor
from forum_federation.db.repository import FederationRepository, PersistenceFailure
from forum_federation.models.outgoing import OutgoingMessage
from forum_federation.services.audience import AudienceResolver

if TYPE_CHECKING:
    from forum_federation.core.metrics import FederationMetrics


logger = logging.getLogger(__name__)

ACTIVITY_CONTENT_TYPE = "application/activity+json"


class DeliveryResult(str, Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class SignedRequest:
    """A POST of one activity to one inbox, already carrying its signature headers."""

    activity_id: str
    url: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


class CircuitBreaker:
    """Circuit breaker implementation for fault tolerance."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def can_execute(self) -> bool:
        """Check if the circuit breaker allows execution."""
        if self.state == "CLOSED":
            return True
        elif self.state == "OPEN":
            if self.last_failure_time is not None and self.retry_after() <= 0:
                self.state = "HALF_OPEN"
                return True
            return False
        else:  # HALF_OPEN
            return True

    def retry_after(self) -> float:
        """Seconds until an open breaker lets the next attempt through."""
        if self.state != "OPEN" or self.last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self.last_failure_time))

    def on_success(self):
        """Handle successful execution."""
        self.failure_count = 0
        self.state = "CLOSED"

    def on_failure(self):
        """Handle failed execution."""
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.failure_count >= self.failure_threshold:
            self.state = "OPEN"


class HttpTransport:
    """Posts signed activities to remote inboxes with retries and per-instance circuit breakers."""

    def __init__(
        self,
        *,
        max_retries: int = 10,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
        breaker_threshold: int = 5,
        breaker_timeout: float = 60.0,
        max_concurrency: int = 16,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initializes the HttpTransport.

        Args:
            max_retries: Retries of a retryable delivery before giving up.
            retry_delay: Base delay of the exponential backoff in seconds.
            timeout: Request timeout in seconds.
            breaker_threshold: Consecutive failures after which an instance is paused.
            breaker_timeout: Time a paused instance waits before the next attempt.
            max_concurrency: Requests in flight at once across all inboxes.
            transport: Optional httpx transport, used by tests to simulate peers.
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.breaker_threshold = breaker_threshold
        self.breaker_timeout = breaker_timeout
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            transport=transport,
        )
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._slots = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(
        cls,
        settings: FederationSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "HttpTransport":
        return cls(
            max_retries=settings.delivery_max_retries,
            retry_delay=settings.delivery_retry_delay_seconds,
            timeout=settings.http_fetch_timeout,
            max_concurrency=settings.delivery_workers,
            transport=transport,
        )

    def breaker(self, domain: str) -> CircuitBreaker:
        if domain not in self._breakers:
            self._breakers[domain] = CircuitBreaker(
                failure_threshold=self.breaker_threshold,
                recovery_timeout=self.breaker_timeout,
            )
        return self._breakers[domain]

    async def send(self, request: SignedRequest) -> DeliveryResult:
        """Performs a single delivery attempt."""
        try:
            async with self._slots:
                response = await self.client.post(
                    request.url, content=request.body, headers=request.headers
                )
        except httpx.HTTPError as exc:
            logger.debug("Delivery of %s to %s failed: %s", request.activity_id, request.url, exc)
            return DeliveryResult.RETRYABLE
        if response.is_success:
            return DeliveryResult.OK
        if response.status_code == 429 or response.status_code >= 500:
            return DeliveryResult.RETRYABLE
        logger.info(
            "Inbox %s refused %s with status %s",
            request.url,
            request.activity_id,
            response.status_code,
        )
        return DeliveryResult.FATAL

    async def deliver(self, request: SignedRequest) -> DeliveryResult:
        """Delivers ``request``, retrying retryable failures with exponential backoff.

        While the instance's breaker is open, attempts wait for it to half-open
        instead of failing; waiting does not use up a retry.

        Returns:
            OK on success, FATAL when the inbox refused the activity,
            RETRYABLE once retries are exhausted.
        """
        breaker = self.breaker(url_domain(request.url))
        for attempt in range(self.max_retries + 1):
            while not breaker.can_execute():
                wait = breaker.retry_after()
                logger.info(
                    "Instance of %s is unreachable, next attempt in %.1fs", request.url, wait
                )
                await asyncio.sleep(wait)
            result = await self.send(request)
            if result is DeliveryResult.OK:
                breaker.on_success()
                return result
            if result is DeliveryResult.FATAL:
                return result
            breaker.on_failure()
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * (2**attempt))
        logger.warning(
            "Giving up delivery of %s to %s after %s attempts",
            request.activity_id,
            request.url,
            self.max_retries + 1,
        )
        return DeliveryResult.RETRYABLE

    async def aclose(self) -> None:
        await self.client.aclose()


class DeliveryQueue:
    """Bounded queue of outgoing messages drained by a single consumer task.

    For each message the consumer resolves the audience, persists the
    activity, then starts one delivery task per inbox without waiting for it.
    Deliveries of messages about the same object to the same inbox run one
    after the other, in submission order.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        audience: AudienceResolver,
        transport: HttpTransport,
        event_bus: Optional[EventBus] = None,
        metrics: Optional["FederationMetrics"] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.audience = audience
        self.transport = transport
        self.event_bus = event_bus
        self.metrics = metrics
        self.running = False
        self._queue: "asyncio.Queue[OutgoingMessage]" = asyncio.Queue(
            maxsize=settings.delivery_queue_size
        )
        self._lanes: Dict[Tuple[str, str], asyncio.Task] = {}
        self._deliveries: Set[asyncio.Task] = set()
        self._consumer: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight(self) -> int:
        return len(self._deliveries)

    async def submit(self, message: OutgoingMessage) -> None:
        """Enqueues a message, waiting while the queue is full."""
        await self._queue.put(message)
        if self.metrics is not None:
            self.metrics.messages_queued_total.labels(kind=message.kind).inc()

    async def start(self) -> None:
        if self._consumer is not None:
            return
        self.running = True
        self._consumer = asyncio.create_task(self._consume())
        logger.info("Delivery queue started.")

    async def stop(self) -> None:
        """Persists every queued message, then waits for in-flight deliveries."""
        if self._consumer is None:
            return
        self.running = False
        await self._queue.join()
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None
        await self._wait_deliveries()
        logger.info("Delivery queue stopped.")

    async def join(self) -> None:
        """Waits until every queued message is processed and delivered."""
        await self._queue.join()
        await self._wait_deliveries()

    async def _wait_deliveries(self) -> None:
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.process(message)
            except Exception:
                logger.exception("Unexpected error processing outgoing message %s", message.id)
            finally:
                self._queue.task_done()

    async def process(self, message: OutgoingMessage) -> List[str]:
        """Persists one message and dispatches its deliveries.

        Returns:
            The inboxes deliveries were started for.
        """
        inboxes = self.audience.resolve(message.audience)
        try:
            recorded = self.repository.record_activity(
                ap_id=message.id,
                kind=message.kind,
                actor_ap_id=message.actor_ap_id,
                data=message.payload,
                inboxes=inboxes,
                local=True,
                sensitive=message.sensitive,
            )
        except PersistenceFailure as exc:
            logger.error("Dropping outgoing message %s: %s", message.id, exc)
            self._count("persistence_failed")
            if self.event_bus is not None:
                await self.event_bus.publish(PERSISTENCE_FAILED, message)
            return []
        if not recorded:
            logger.info("Outgoing message %s was already recorded, not resending", message.id)
            return []
        if not self.settings.federation_enabled or not inboxes:
            return []

        actor = self.repository.get_actor(message.actor_ap_id)
        if actor is None or not actor.private_key:
            logger.error("No signing key for %s, cannot deliver %s", message.actor_ap_id, message.id)
            return []
        body = message.body()
        for inbox in inboxes:
            self._dispatch(message.object_ap_id, self._sign(message, actor, inbox, body))
        logger.debug("Dispatched %s to %d inbox(es)", message.id, len(inboxes))
        return inboxes

    def _sign(
        self, message: OutgoingMessage, actor: CachedActor, inbox: str, body: bytes
    ) -> SignedRequest:
        headers = sign_request(
            method="POST",
            url=inbox,
            body=body,
            key_id=f"{actor.ap_id}#main-key",
            private_key_hex=actor.private_key,
        )
        headers["Content-Type"] = ACTIVITY_CONTENT_TYPE
        return SignedRequest(activity_id=message.id, url=inbox, body=body, headers=headers)

    def _dispatch(self, object_ap_id: str, request: SignedRequest) -> None:
        key = (object_ap_id, request.url)
        previous = self._lanes.get(key)
        task = asyncio.create_task(self._deliver_after(previous, request))
        self._lanes[key] = task
        self._deliveries.add(task)
        task.add_done_callback(lambda done, key=key: self._finished(key, done))

    def _finished(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if self._lanes.get(key) is task:
            del self._lanes[key]

    async def _deliver_after(
        self, previous: Optional[asyncio.Task], request: SignedRequest
    ) -> DeliveryResult:
        if previous is not None:
            # Any outcome of the earlier delivery unblocks this one.
            await asyncio.wait([previous])
        started = time.monotonic()
        try:
            result = await self.transport.deliver(request)
        except Exception:
            logger.exception("Delivery of %s to %s crashed", request.activity_id, request.url)
            result = DeliveryResult.FATAL
        if self.metrics is not None:
            self.metrics.delivery_latency.observe(time.monotonic() - started)
        self._count(result.value)
        if result is not DeliveryResult.OK:
            logger.warning(
                "Delivery of %s to %s failed: %s", request.activity_id, request.url, result.value
            )
        return result

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.deliveries_total.labels(result=result).inc()


__all__ = [
    "CircuitBreaker",
    "DeliveryQueue",
    "DeliveryResult",
    "HttpTransport",
    "SignedRequest",
]
