"""ActivityPub federation engine for link-aggregator forums."""

__version__ = "0.1.0"
