"""
Notification deduplication.

The same event usually arrives from every relay a group uses. The table
remembers (event id, subscriber id) pairs that already produced a notification
for `retention_seconds`, which must exceed the worst cross-relay propagation
delay.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import structlog

log = structlog.get_logger()

DEFAULT_RETENTION_SECONDS = 300.0


@dataclass(frozen=True)
class DeliveryRecord:
    relay_url: str
    observed_at: float


class DedupTable:
    """
    (event id, subscriber id) → first relay that delivered it.

    `claim` never awaits, so check-and-record is a single step with respect to
    every relay task sharing the event loop.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self._retention = retention_seconds
        self._clock = clock
        self._records: dict[tuple[str, str], DeliveryRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    @property
    def retention_seconds(self) -> float:
        return self._retention

    def claim(self, event_id: str, subscriber_id: str, relay_url: str) -> bool:
        """Record the pair and return True, or return False if already recorded."""
        key = (event_id, subscriber_id)
        if key in self._records:
            return False
        self._records[key] = DeliveryRecord(relay_url=relay_url, observed_at=self._clock())
        return True

    def get(self, event_id: str, subscriber_id: str) -> DeliveryRecord | None:
        return self._records.get((event_id, subscriber_id))

    def sweep(self) -> int:
        """Discard records older than the retention window. Returns count removed."""
        cutoff = self._clock() - self._retention
        expired = [k for k, r in self._records.items() if r.observed_at < cutoff]
        for key in expired:
            del self._records[key]
        if expired:
            log.debug("dedup.swept", removed=len(expired), remaining=len(self._records))
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()
