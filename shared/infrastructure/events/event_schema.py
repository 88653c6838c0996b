"""
Event Schema.

Defines the Event dataclass delivered through the notification collaborator.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

MAX_EVENT_SIZE = 64 * 1024  # bytes


@dataclass
class Event:
    """
    Notification event.

    The 'entity' field contains event-specific data (IDs, amounts, names).
    """

    type: str
    session_id: int
    entity: dict[str, Any] = field(default_factory=dict)
    ts: str | None = None
    v: int = 1  # Schema version

    def __post_init__(self) -> None:
        if not self.type or not isinstance(self.type, str):
            raise ValueError("Event type must be a non-empty string")

        if not isinstance(self.session_id, int) or self.session_id <= 0:
            raise ValueError("Event session_id must be a positive integer")

        if self.entity is not None and not isinstance(self.entity, dict):
            raise ValueError("Event entity must be a dict or None")

        if self.ts is None:
            self.ts = datetime.now(timezone.utc).isoformat()

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        data = asdict(self)
        data["entity"] = data["entity"] or {}
        return json.dumps(data, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialize event from JSON string."""
        data = json.loads(json_str)
        return cls(**data)
