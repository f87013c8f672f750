from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationSettings(BaseSettings):
    """Configuration surface for the federation engine."""

    hostname: str = Field(
        default="localhost:8536",
        description="Domain of the local instance, optionally with a port.",
    )  # IMPORTANT: Set this to the public domain in production
    protocol: str = Field(
        default="https",
        description="URL scheme used for local identifiers: 'http' or 'https'.",
        pattern="^(http|https)$",
    )
    database_url: str = Field(
        default="sqlite+pysqlite:///./federation.db",
        description="SQLAlchemy-compatible database URL.",
    )
    federation_enabled: bool = Field(default=True)

    allowed_instances: Tuple[str, ...] = Field(
        default=(),
        description="If non-empty, only these domains may federate with this instance.",
    )
    blocked_instances: Tuple[str, ...] = Field(
        default=(),
        description="Domains that may never federate with this instance.",
    )
    blocklist_path: Optional[Path] = Field(
        default=None,
        description="Optional JSON file with additional blocked domains.",
    )

    actor_refresh_interval_seconds: float = Field(
        default=86_400.0,
        ge=1.0,
        description="Age after which a cached remote actor is refetched before reuse.",
    )
    max_fetch_requests: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Network fetches allowed while resolving one reference chain.",
    )

    http_fetch_timeout: float = Field(
        default=60.0,
        ge=1.0,
        le=300.0,
        description="Timeout for fetching remote objects in seconds.",
    )
    http_fetch_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for a single remote fetch on network errors.",
    )
    http_retry_delay: float = Field(
        default=0.5,
        ge=0.0,
        le=60.0,
        description="Base delay between fetch retries in seconds.",
    )

    delivery_workers: int = Field(
        default=16,
        ge=1,
        le=512,
        description="Maximum number of concurrent outgoing deliveries.",
    )
    delivery_queue_size: int = Field(
        default=1_000,
        ge=1,
        description="Capacity of the outgoing message queue.",
    )
    delivery_max_retries: int = Field(default=10, ge=0)
    delivery_retry_delay_seconds: float = Field(default=2.0, ge=0.0)

    signature_max_age_seconds: int = Field(
        default=43_200,
        ge=60,
        description="Maximum accepted clock skew of a signed request's Date header.",
    )
    slur_filter_regex: Optional[str] = Field(
        default=None,
        description="Case-insensitive pattern; matching inbound content is rejected.",
    )

    prometheus_port: int = Field(default=0, ge=0, le=65535)
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="federation_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate_instance_lists(self) -> "FederationSettings":
        """Only one of the allowlist and the blocklist may be configured."""
        if self.allowed_instances and self.blocked_instances:
            raise ValueError(
                "allowed_instances and blocked_instances cannot both be set"
            )
        return self

    @property
    def domain(self) -> str:
        """Local hostname without the port."""
        return self.hostname.split(":")[0]

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.hostname}"

    def load_blocklist(self) -> Tuple[str, ...]:
        """Load extra blocked domains from ``blocklist_path``."""
        if not self.blocklist_path:
            return ()
        path = Path(self.blocklist_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"blocklist file not found: {path}")
        with path.open("r", encoding="utf-8") as file_handle:
            data = json.load(file_handle)
        domains = data.get("blocked")
        if not isinstance(domains, list):
            raise ValueError("blocklist must contain a 'blocked' list")
        return tuple(str(domain).lower() for domain in domains)
