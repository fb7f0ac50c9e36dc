"""
Relay wire protocol.

Relays speak JSON arrays over a websocket:

- Outbound: ["REQ", sub_id, filter, ...] and ["CLOSE", sub_id]
- Inbound:  ["EVENT", sub_id, event], ["EOSE", sub_id], ["NOTICE", message],
            ["OK", event_id, accepted, message], ["CLOSED", sub_id, message]

Events are treated as opaque, already-valid structures; only the fields needed
for routing are checked.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolAnomaly

KIND_WELCOME = 444
KIND_GROUP_MESSAGE = 445

CHANNEL_TAG = "h"
RECIPIENT_TAG = "p"

DEFAULT_SUBSCRIPTION_ID = "mdk-push"


@dataclass
class RelayEvent:
    """A single event delivered by a relay."""
    id: str
    pubkey: str
    kind: int
    created_at: int
    tags: list[list[str]] = field(default_factory=list)
    content: str = ""

    def tag_value(self, name: str) -> str | None:
        """Return the first value of the first tag called `name`, if any."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name and tag[1]:
                return tag[1]
        return None

    @property
    def channel_id(self) -> str | None:
        return self.tag_value(CHANNEL_TAG)

    @property
    def recipient(self) -> str | None:
        return self.tag_value(RECIPIENT_TAG)

    @classmethod
    def from_dict(cls, data: Any) -> RelayEvent:
        if not isinstance(data, dict):
            raise ProtocolAnomaly("event is not an object")

        event_id = data.get("id")
        pubkey = data.get("pubkey")
        kind = data.get("kind")
        tags = data.get("tags")

        if not isinstance(event_id, str) or not event_id:
            raise ProtocolAnomaly("event has no id")
        if not isinstance(pubkey, str) or not pubkey:
            raise ProtocolAnomaly("event has no pubkey")
        if not isinstance(kind, int) or isinstance(kind, bool):
            raise ProtocolAnomaly("event kind is not an integer")
        if not isinstance(tags, list) or not all(isinstance(t, list) for t in tags):
            raise ProtocolAnomaly("event tags are not a list of lists")

        created_at = data.get("created_at", 0)
        if not isinstance(created_at, int):
            created_at = 0

        return cls(
            id=event_id,
            pubkey=pubkey,
            kind=kind,
            created_at=created_at,
            tags=[[str(v) for v in t] for t in tags],
            content=data.get("content") or "",
        )


@dataclass
class RelayFrame:
    """A parsed inbound frame."""
    type: str
    subscription_id: str | None = None
    event: RelayEvent | None = None
    message: str | None = None


def parse_frame(raw: str | bytes) -> RelayFrame:
    """Parse one inbound text frame. Raises ProtocolAnomaly when malformed."""
    try:
        msg = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise ProtocolAnomaly(f"invalid JSON: {exc}") from exc

    if not isinstance(msg, list) or not msg or not isinstance(msg[0], str):
        raise ProtocolAnomaly("frame is not an array with a type")

    frame_type = msg[0]

    if frame_type == "EVENT":
        if len(msg) < 3:
            raise ProtocolAnomaly("EVENT frame is too short")
        return RelayFrame(
            type=frame_type,
            subscription_id=str(msg[1]),
            event=RelayEvent.from_dict(msg[2]),
        )
    if frame_type == "EOSE":
        return RelayFrame(type=frame_type, subscription_id=_get(msg, 1))
    if frame_type == "NOTICE":
        return RelayFrame(type=frame_type, message=_get(msg, 1))
    if frame_type == "CLOSED":
        return RelayFrame(
            type=frame_type, subscription_id=_get(msg, 1), message=_get(msg, 2)
        )
    if frame_type == "OK":
        return RelayFrame(type=frame_type, message=_get(msg, 3))

    return RelayFrame(type=frame_type)


def _get(msg: list, index: int) -> str | None:
    if len(msg) > index and msg[index] is not None:
        return str(msg[index])
    return None


def req_frame(subscription_id: str, filters: list[dict[str, Any]]) -> str:
    return json.dumps(["REQ", subscription_id, *filters], separators=(",", ":"))


def close_frame(subscription_id: str) -> str:
    return json.dumps(["CLOSE", subscription_id], separators=(",", ":"))
