from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server


class FederationMetrics:
    """Prometheus collectors for the federation engine.

    Collectors are registered on their own registry so that several
    applications (for example in tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.inbound_received_total = Counter(
            "federation_inbound_received_total",
            "Inbound activities received",
            ["activity_type"],
            registry=self.registry,
        )
        self.inbound_rejected_total = Counter(
            "federation_inbound_rejected_total",
            "Inbound activities rejected",
            ["reason"],
            registry=self.registry,
        )
        self.activities_applied_total = Counter(
            "federation_activities_applied_total",
            "Inbound activities applied to local storage",
            ["kind"],
            registry=self.registry,
        )
        self.remote_fetches_total = Counter(
            "federation_remote_fetches_total",
            "Remote object fetches",
            ["outcome"],
            registry=self.registry,
        )
        self.messages_queued_total = Counter(
            "federation_messages_queued_total",
            "Outgoing messages submitted to the delivery queue",
            ["kind"],
            registry=self.registry,
        )
        self.deliveries_total = Counter(
            "federation_deliveries_total",
            "Outgoing delivery attempts by final result",
            ["result"],
            registry=self.registry,
        )
        self.delivery_latency = Histogram(
            "federation_delivery_latency_seconds",
            "Latency of a single delivery request",
            registry=self.registry,
        )

    def serve(self, port: int) -> None:
        """Starts the Prometheus exporter on ``port``."""
        start_http_server(port, registry=self.registry)


__all__ = ["FederationMetrics"]
