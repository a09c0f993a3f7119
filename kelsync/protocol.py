"""Messages exchanged between gossip peers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from kelsync.types import SignedKeyEvent

PROTOCOL_NAME = "/kels/sync/1.0.0"


def _dumps(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class KelRequest:
    """Request for the full log of ``prefix``."""

    prefix: str

    def to_dict(self) -> dict[str, Any]:
        return {"prefix": self.prefix}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KelRequest:
        return cls(prefix=data["prefix"])


@dataclass(frozen=True)
class KelSyncResponse:
    """A peer's answer to a :class:`KelRequest`."""

    prefix: str
    events: list[SignedKeyEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"prefix": self.prefix, "events": [e.to_dict() for e in self.events]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KelSyncResponse:
        return cls(
            prefix=data["prefix"],
            events=[SignedKeyEvent.from_dict(e) for e in data["events"]],
        )


@dataclass(frozen=True)
class KelAnnouncement:
    """Broadcast that the log ``prefix`` now ends with event ``said``."""

    prefix: str
    said: str

    @classmethod
    def from_pubsub_message(cls, message: str) -> KelAnnouncement | None:
        """Parse a ``{prefix}:{said}`` message; an empty SAID means deletion."""
        prefix, sep, said = message.partition(":")
        if not sep or not said:
            return None
        return cls(prefix, said)

    def to_json(self) -> str:
        return _dumps({"prefix": self.prefix, "said": self.said})

    @classmethod
    def from_json(cls, text: str | bytes) -> KelAnnouncement:
        """Parse an announcement; raises ``ValueError`` if it is malformed."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("announcement must be a JSON object")
        prefix, said = data.get("prefix"), data.get("said")
        if not isinstance(prefix, str) or not isinstance(said, str):
            raise ValueError("announcement needs string fields 'prefix' and 'said'")
        return cls(prefix, said)