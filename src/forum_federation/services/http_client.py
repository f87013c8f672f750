from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from forum_federation.core.policy import url_domain
from forum_federation.core.security import sign_request
from forum_federation.core.settings import FederationSettings
from forum_federation.schemas import WebfingerResponse
from forum_federation.services.resolver import RemoteFetchFailed

logger = logging.getLogger(__name__)

ACTIVITY_MEDIA_TYPES = ("application/activity+json", "application/ld+json")
ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
USER_AGENT = "forum-federation/0.1"


class ActivityPubClient:
    """Fetches ActivityPub documents and webfinger records over HTTP.

    GET requests are signed with the local site actor's key once one has been
    configured through :meth:`set_signing_key`.
    """

    def __init__(
        self,
        *,
        protocol: str = "https",
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initializes the ActivityPubClient.

        Args:
            protocol: Scheme used for webfinger lookups.
            timeout: Request timeout in seconds.
            max_retries: Retries for network errors and 5xx/429 responses.
            retry_delay: Base delay between retries in seconds.
            transport: Optional httpx transport, used by tests to simulate peers.
        """
        self.protocol = protocol
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
            transport=transport,
        )
        self._key_id: Optional[str] = None
        self._private_key_hex: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: FederationSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ActivityPubClient":
        return cls(
            protocol=settings.protocol,
            timeout=settings.http_fetch_timeout,
            max_retries=settings.http_fetch_retries,
            retry_delay=settings.http_retry_delay,
            transport=transport,
        )

    def set_signing_key(self, key_id: str, private_key_hex: str) -> None:
        self._key_id = key_id
        self._private_key_hex = private_key_hex

    def _headers(self, url: str) -> Dict[str, str]:
        headers = {"Accept": ACCEPT_HEADER}
        if self._key_id and self._private_key_hex:
            headers.update(
                sign_request(
                    method="GET",
                    url=url,
                    body=None,
                    key_id=self._key_id,
                    private_key_hex=self._private_key_hex,
                )
            )
        return headers

    async def _get(self, url: str, headers: Dict[str, str]) -> httpx.Response:
        """GET with exponential backoff on network errors and 5xx/429 answers."""
        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.get(url, headers=headers)
                if response.status_code < 500 and response.status_code != 429:
                    return response
                last_exception = RemoteFetchFailed(
                    f"{url} answered {response.status_code}"
                )
            except httpx.HTTPError as exc:
                last_exception = exc
            logger.warning(
                "Attempt %s failed fetching %s: %s", attempt + 1, url, last_exception
            )
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * (2**attempt))
        raise RemoteFetchFailed(f"could not fetch {url}") from last_exception

    async def fetch_object(self, url: str) -> Dict[str, Any]:
        """Fetches one ActivityPub document.

        Args:
            url: The id of the document.

        Returns:
            The decoded JSON document.

        Raises:
            RemoteFetchFailed: On network errors, non-2xx answers, a wrong
                content type, or a document whose id is on another domain.
        """
        response = await self._get(url, self._headers(url))
        if response.status_code in (404, 410):
            raise RemoteFetchFailed(f"{url} is gone", gone=True)
        if not response.is_success:
            raise RemoteFetchFailed(f"{url} answered {response.status_code}")

        content_type = response.headers.get("content-type", "")
        media_type = content_type.split(";", 1)[0].strip().lower()
        if media_type not in ACTIVITY_MEDIA_TYPES:
            raise RemoteFetchFailed(f"{url} has unexpected content type {content_type!r}")

        try:
            document = response.json()
        except ValueError as exc:
            raise RemoteFetchFailed(f"{url} did not return JSON") from exc
        if not isinstance(document, dict) or not isinstance(document.get("id"), str):
            raise RemoteFetchFailed(f"{url} did not return an object with an id")
        if url_domain(document["id"]) != url_domain(url):
            raise RemoteFetchFailed(
                f"{url} returned an object with foreign id {document['id']}"
            )
        return document

    async def webfinger(self, name: str, domain: str) -> str:
        """Looks up the actor URL of ``name@domain``.

        Raises:
            RemoteFetchFailed: If the lookup fails or names no actor.
        """
        url = (
            f"{self.protocol}://{domain}/.well-known/webfinger"
            f"?resource=acct:{name}@{domain}"
        )
        response = await self._get(
            url, {"Accept": "application/jrd+json, application/json"}
        )
        if response.status_code in (404, 410):
            raise RemoteFetchFailed(f"no webfinger record for {name}@{domain}", gone=True)
        if not response.is_success:
            raise RemoteFetchFailed(f"webfinger for {name}@{domain} answered {response.status_code}")
        try:
            record = WebfingerResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RemoteFetchFailed(f"invalid webfinger record for {name}@{domain}") from exc
        actor_url = record.actor_url()
        if actor_url is None:
            raise RemoteFetchFailed(f"webfinger record for {name}@{domain} has no actor link")
        return actor_url

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = ["ActivityPubClient", "RemoteFetchFailed"]
