from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ActivityParseError(ValueError):
    """Raised when the provided bytes cannot be parsed as an activity."""


@dataclass
class InboundRequest:
    """A signed HTTP request delivered to one of the inboxes."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    def json(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ActivityParseError("activity must be JSON bytes") from exc
        if not isinstance(payload, dict):
            raise ActivityParseError("activity must be a JSON object")

        required = {"id", "type", "actor"}
        missing = required - payload.keys()
        if missing:
            raise ActivityParseError(f"missing fields: {', '.join(sorted(missing))}")
        return payload
