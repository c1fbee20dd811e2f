"""Change events and their durable one-line JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kubemirror.errors import RecordFormatError
from kubemirror.models.resources import Resource


class EventType(StrEnum):
    """Kind of mutation observed on the source cluster."""

    ADD = "Add"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class Event:
    """A single change-feed notification.

    Produced by a change feed (or decoded from the log), consumed by the
    syncer, recorder and replayer. Delete events may carry an identity-only
    resource.
    """

    type: EventType
    resource: Resource
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.timestamp.isoformat(),
            "event": self.type.value,
            "resource": self.resource,
        }

    def to_json(self) -> str:
        """Serialise to a single line (no embedded newlines)."""
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=False)

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        if not isinstance(data, dict):
            raise RecordFormatError("record is not a JSON object")
        try:
            event_type = EventType(data["event"])
        except KeyError as exc:
            raise RecordFormatError("record has no 'event' field") from exc
        except ValueError as exc:
            raise RecordFormatError(f"unknown event {data['event']!r}") from exc

        resource = data.get("resource")
        if not isinstance(resource, dict):
            raise RecordFormatError("record has no 'resource' object")

        raw_time = data.get("time")
        if not isinstance(raw_time, str):
            raise RecordFormatError("record has no 'time' field")
        try:
            timestamp = datetime.fromisoformat(raw_time.replace("Z", "+00:00"))
        except ValueError as exc:
            raise RecordFormatError(f"invalid timestamp {raw_time!r}") from exc
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        return cls(type=event_type, resource=resource, timestamp=timestamp)

    @classmethod
    def from_json(cls, line: str) -> Event:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise RecordFormatError(f"invalid JSON: {exc.msg}") from exc
        return cls.from_dict(data)
