"""
Per-relay filter aggregation.

Each relay carries one subscription whose filter is the union of interest of
every subscriber using that relay. Filters always start at the time they were
computed: the bridge never asks for stored history.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

import structlog

from .protocol import (
    CHANNEL_TAG,
    KIND_GROUP_MESSAGE,
    KIND_WELCOME,
    RECIPIENT_TAG,
    req_frame,
)
from .registry import SubscriberRegistry, normalize_relay_url

if TYPE_CHECKING:
    from .relay import RelayPool

log = structlog.get_logger()


@dataclass(frozen=True)
class RelayFilter:
    """
    Aggregate interest for one relay.

    Equality ignores `since`, so recomputing an unchanged registry yields an
    equal filter.
    """
    channel_ids: frozenset[str]
    subscriber_ids: frozenset[str]
    since: int = field(default=0, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.channel_ids and not self.subscriber_ids

    def to_filters(self) -> list[dict[str, Any]]:
        return [
            {
                "kinds": [KIND_GROUP_MESSAGE],
                f"#{CHANNEL_TAG}": sorted(self.channel_ids),
                "since": self.since,
            },
            {
                "kinds": [KIND_WELCOME],
                f"#{RECIPIENT_TAG}": sorted(self.subscriber_ids),
                "since": self.since,
            },
        ]

    def to_frame(self, subscription_id: str) -> str:
        return req_frame(subscription_id, self.to_filters())


class FilterAggregator:
    """Derives relay filters from the registry and pushes them to relay links."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._clock = clock
        self._pool: RelayPool | None = None

    def bind(self, pool: RelayPool) -> None:
        """Attach the relay links and start reacting to registry changes."""
        self._pool = pool
        self._registry.add_listener(self.on_registry_change)

    def compute(self, relay_url: str) -> RelayFilter:
        channels: set[str] = set()
        subscribers: set[str] = set()
        for sub in self._registry.subscribers_for_relay(relay_url):
            channels |= sub.channel_ids
            subscribers.add(sub.subscriber_id)
        return RelayFilter(
            channel_ids=frozenset(channels),
            subscriber_ids=frozenset(subscribers),
            since=int(self._clock()),
        )

    def on_registry_change(self, relay_urls: set[str]) -> None:
        if self._pool is None or self._pool.closed:
            return
        for url in sorted(relay_urls):
            link = self._pool.ensure(normalize_relay_url(url))
            link.refresh_filter()
        log.debug("filters.recomputed", relays=len(relay_urls))
