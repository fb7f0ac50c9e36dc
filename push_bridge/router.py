"""
Event routing.

Matches each inbound relay event to the subscribers that care about it and
schedules one push per (event, subscriber):

- kind 445 (group message) → every subscriber of the event's channel
- kind 444 (group invitation) → the subscriber named in the event's p tag

Authors are never notified about their own events, and the dedup table
collapses the copies of an event that arrive from several relays.
"""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import urlparse

import structlog

from .dedup import DedupTable
from .metrics import MetricsCollector
from .protocol import KIND_GROUP_MESSAGE, KIND_WELCOME, RelayEvent
from .push import NotificationPayload, PushDispatcher
from .registry import Subscriber, SubscriberRegistry

log = structlog.get_logger()


def relay_host(url: str) -> str:
    return urlparse(url).netloc or url


def _time_label(created_at: int) -> str:
    return datetime.fromtimestamp(created_at, tz=timezone.utc).strftime("%I:%M %p")


def message_payload(event: RelayEvent, channel_id: str, relay_url: str) -> NotificationPayload:
    return NotificationPayload(
        title="New message",
        body=(
            f"Group: {channel_id[:12]}...\n"
            f"Time: {_time_label(event.created_at)}\n"
            f"Relay: {relay_host(relay_url)}"
        ),
        tag=f"message-{channel_id}",
        data={
            "groupId": channel_id,
            "eventId": event.id,
            "timestamp": event.created_at,
            "relay": relay_url,
        },
    )


def welcome_payload(event: RelayEvent, relay_url: str) -> NotificationPayload:
    return NotificationPayload(
        title="New group invitation",
        body=(
            "You've been invited to join a new group\n"
            f"Time: {_time_label(event.created_at)}\n"
            f"Relay: {relay_host(relay_url)}"
        ),
        tag=f"welcome-{event.id}",
        data={
            "eventId": event.id,
            "timestamp": event.created_at,
            "relay": relay_url,
        },
    )


class EventRouter:
    """Routes relay events to push deliveries."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        dedup: DedupTable,
        dispatcher: PushDispatcher,
        metrics: MetricsCollector | None = None,
    ):
        self._registry = registry
        self._dedup = dedup
        self._dispatcher = dispatcher
        self._metrics = metrics

    async def route(self, event: RelayEvent, source_relay_url: str) -> list[str]:
        """Schedule notifications for `event`. Returns the subscriber ids notified."""
        if event.kind == KIND_GROUP_MESSAGE:
            channel_id = event.channel_id
            if not channel_id:
                return []
            candidates = self._registry.find_interested(channel_id)
            payload = message_payload(event, channel_id, source_relay_url)
            log.debug(
                "router.message",
                channel=channel_id[:16],
                event_id=event.id[:8],
                relay=source_relay_url,
                candidates=len(candidates),
            )
        elif event.kind == KIND_WELCOME:
            recipient = event.recipient
            subscriber = self._registry.get(recipient) if recipient else None
            if subscriber is None:
                return []
            candidates = {subscriber}
            payload = welcome_payload(event, source_relay_url)
            log.debug("router.welcome", recipient=recipient[:16], event_id=event.id[:8])
        else:
            return []

        notified = []
        for subscriber in sorted(candidates, key=lambda s: s.subscriber_id):
            if self._should_notify(event, subscriber, source_relay_url):
                self._dispatcher.submit(subscriber, payload)
                notified.append(subscriber.subscriber_id)
        return notified

    def _should_notify(
        self, event: RelayEvent, subscriber: Subscriber, source_relay_url: str
    ) -> bool:
        sid = subscriber.subscriber_id
        # Self-loop prevention
        if sid == event.pubkey:
            return False

        if not self._dedup.claim(event.id, sid, source_relay_url):
            first = self._dedup.get(event.id, sid)
            log.debug(
                "router.duplicate_skipped",
                event_id=event.id[:8],
                subscriber=sid[:16],
                first_relay=first.relay_url if first else None,
                relay=source_relay_url,
            )
            if self._metrics:
                self._metrics.inc("notifications_deduplicated_total")
            return False
        return True
