from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Pattern
from urllib.parse import urlsplit

from forum_federation.core.settings import FederationSettings


class DomainPolicyError(ValueError):
    """Raised when a URL may not be used for federation."""


def url_domain(url: str) -> str:
    """Lower-case host of ``url`` without port; empty string when absent."""
    return (urlsplit(url).hostname or "").lower()


@dataclass
class FederationPolicy:
    """Allow/deny rules deciding which URLs may be fetched from or delivered to.

    Exactly one of ``allowed`` and ``blocked`` may be non-empty. The local
    domain is always permitted.
    """

    local_domain: str
    protocol: str
    federation_enabled: bool = True
    allowed: FrozenSet[str] = field(default_factory=frozenset)
    blocked: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: FederationSettings) -> "FederationPolicy":
        """Builds the policy from settings, including the optional blocklist file."""
        blocked = set(settings.blocked_instances) | set(settings.load_blocklist())
        return cls(
            local_domain=settings.domain.lower(),
            protocol=settings.protocol,
            federation_enabled=settings.federation_enabled,
            allowed=frozenset(d.lower() for d in settings.allowed_instances),
            blocked=frozenset(d.lower() for d in blocked),
        )

    def is_local(self, url: str) -> bool:
        return url_domain(url) == self.local_domain

    def check_url(self, url: str) -> None:
        """Validates ``url`` against the federation policy.

        Raises:
            DomainPolicyError: If the URL is malformed or its domain is not permitted.
        """
        parts = urlsplit(url)
        domain = (parts.hostname or "").lower()
        if not domain:
            raise DomainPolicyError(f"url has no domain: {url!r}")
        if domain == self.local_domain:
            return
        if not self.federation_enabled:
            raise DomainPolicyError(
                f"trying to connect with {domain}, but federation is disabled"
            )
        if domain == "localhost" or _is_ip_literal(domain):
            raise DomainPolicyError(f"invalid hostname: {domain}")
        if parts.scheme != self.protocol:
            raise DomainPolicyError(f"invalid scheme: {parts.scheme!r}")
        self.check_domain(domain)

    def check_domain(self, domain: str) -> None:
        domain = domain.lower()
        if domain == self.local_domain:
            return
        if self.allowed and domain not in self.allowed:
            raise DomainPolicyError(f"{domain} not in federation allowlist")
        if domain in self.blocked:
            raise DomainPolicyError(f"{domain} is in federation blocklist")

    def permits(self, url: str) -> bool:
        try:
            self.check_url(url)
        except DomainPolicyError:
            return False
        return True


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


@dataclass
class ContentFilter:
    """Site-configured keyword filter applied to inbound text."""

    pattern: Optional[Pattern[str]] = None

    @classmethod
    def from_settings(cls, settings: FederationSettings) -> "ContentFilter":
        if not settings.slur_filter_regex:
            return cls()
        return cls(re.compile(settings.slur_filter_regex, re.IGNORECASE))

    def violations(self, texts: Iterable[Optional[str]]) -> list[str]:
        """Returns the matched fragments across ``texts``."""
        if self.pattern is None:
            return []
        found: list[str] = []
        for text in texts:
            if text:
                found.extend(match.group(0) for match in self.pattern.finditer(text))
        return found


__all__ = ["ContentFilter", "DomainPolicyError", "FederationPolicy", "url_domain"]
