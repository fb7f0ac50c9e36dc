"""
Subscriber registry.

Authoritative in-memory mapping of subscriber → interest set. Indexed by
channel (for per-event lookups) and by relay (for filter aggregation).
Registrations are not persisted; clients re-subscribe on their own schedule.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

import structlog
from websockets.exceptions import InvalidURI
from websockets.uri import parse_uri

from .errors import InvalidRequest

log = structlog.get_logger()

RelayChangeListener = Callable[[set[str]], None]

P256DH_LENGTH = 65
AUTH_SECRET_LENGTH = 16


@dataclass(frozen=True)
class PushEndpoint:
    """Web Push endpoint descriptor as produced by the browser."""
    endpoint: str
    p256dh: str
    auth: str

    def to_webpush_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }


@dataclass(frozen=True)
class Subscriber:
    subscriber_id: str
    push_endpoint: PushEndpoint
    channel_ids: frozenset[str]
    relay_urls: frozenset[str]
    registered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )


def normalize_relay_url(url: str) -> str:
    return url.strip().rstrip("/")


def _decoded_length(value: str) -> int:
    """Length of a base64url key as browsers send it (padding optional)."""
    stripped = value.rstrip("=")
    padded = stripped + "=" * (-len(stripped) % 4)
    return len(base64.b64decode(padded, altchars=b"-_", validate=True))


def check_push_keys(endpoint: PushEndpoint) -> None:
    """Reject keys the push provider could never encrypt to."""
    try:
        p256dh = _decoded_length(endpoint.p256dh)
        auth = _decoded_length(endpoint.auth)
    except ValueError as exc:
        raise InvalidRequest(f"push keys are not base64url: {exc}") from exc
    if p256dh != P256DH_LENGTH:
        raise InvalidRequest("p256dh must be an uncompressed P-256 point")
    if auth != AUTH_SECRET_LENGTH:
        raise InvalidRequest("auth secret must be 16 bytes")


def check_relay_url(url: str) -> None:
    try:
        parse_uri(url)
    except (InvalidURI, ValueError) as exc:
        raise InvalidRequest(f"invalid relay url {url}: {exc}") from exc


class SubscriberRegistry:
    """
    Owns all Subscriber records.

    Mutations never await, so each insert/remove/reindex runs as one unit on
    the event loop. Listeners are told which relays were affected by a
    mutation, after the indexes are consistent again.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, Subscriber] = {}
        self._by_channel: dict[str, set[str]] = {}
        self._by_relay: dict[str, set[str]] = {}
        self._listeners: list[RelayChangeListener] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber_id: object) -> bool:
        return subscriber_id in self._subscribers

    def add_listener(self, listener: RelayChangeListener) -> None:
        """Register a callback invoked with the relay urls touched by each mutation."""
        self._listeners.append(listener)

    # --- Mutations ---

    def subscribe(
        self,
        subscriber_id: str,
        push_endpoint: PushEndpoint | None,
        channel_ids: Iterable[str],
        relay_urls: Iterable[str],
    ) -> Subscriber:
        """Insert or wholesale-replace a subscriber."""
        if not subscriber_id:
            raise InvalidRequest("subscriber id is required")
        if push_endpoint is None or not push_endpoint.endpoint:
            raise InvalidRequest("push endpoint is required")
        check_push_keys(push_endpoint)

        relays = frozenset(normalize_relay_url(u) for u in relay_urls if u and u.strip())
        if not relays:
            raise InvalidRequest("at least one relay url is required")
        for url in relays:
            check_relay_url(url)

        subscriber = Subscriber(
            subscriber_id=subscriber_id,
            push_endpoint=push_endpoint,
            channel_ids=frozenset(c for c in channel_ids if c),
            relay_urls=relays,
        )

        previous = self._subscribers.get(subscriber_id)
        if previous is not None:
            self._unindex(previous)
        self._subscribers[subscriber_id] = subscriber
        self._index(subscriber)

        affected = set(subscriber.relay_urls)
        if previous is not None:
            affected |= previous.relay_urls

        log.info(
            "registry.subscribed",
            subscriber=subscriber_id[:16],
            channels=len(subscriber.channel_ids),
            relays=len(subscriber.relay_urls),
            replaced=previous is not None,
        )
        self._notify(affected)
        return subscriber

    def unsubscribe(self, subscriber_id: str) -> bool:
        """Remove a subscriber. Returns False if it was not registered."""
        previous = self._subscribers.pop(subscriber_id, None)
        if previous is None:
            return False
        self._unindex(previous)
        log.info("registry.unsubscribed", subscriber=subscriber_id[:16])
        self._notify(set(previous.relay_urls))
        return True

    def remove_on_permanent_failure(self, subscriber_id: str) -> bool:
        removed = self.unsubscribe(subscriber_id)
        if removed:
            log.info("registry.removed_dead_endpoint", subscriber=subscriber_id[:16])
        return removed

    # --- Queries ---

    def get(self, subscriber_id: str) -> Subscriber | None:
        return self._subscribers.get(subscriber_id)

    def find_interested(self, channel_id: str) -> set[Subscriber]:
        ids = self._by_channel.get(channel_id, ())
        return {self._subscribers[sid] for sid in ids}

    def subscribers_for_relay(self, relay_url: str) -> list[Subscriber]:
        ids = self._by_relay.get(normalize_relay_url(relay_url), ())
        return [self._subscribers[sid] for sid in ids]

    # --- Internals ---

    def _index(self, subscriber: Subscriber) -> None:
        sid = subscriber.subscriber_id
        for channel in subscriber.channel_ids:
            self._by_channel.setdefault(channel, set()).add(sid)
        for url in subscriber.relay_urls:
            self._by_relay.setdefault(url, set()).add(sid)

    def _unindex(self, subscriber: Subscriber) -> None:
        sid = subscriber.subscriber_id
        for channel in subscriber.channel_ids:
            members = self._by_channel.get(channel)
            if members is not None:
                members.discard(sid)
                if not members:
                    del self._by_channel[channel]
        for url in subscriber.relay_urls:
            members = self._by_relay.get(url)
            if members is not None:
                members.discard(sid)
                if not members:
                    del self._by_relay[url]

    def _notify(self, relay_urls: set[str]) -> None:
        for listener in self._listeners:
            listener(relay_urls)
