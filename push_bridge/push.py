"""
Push delivery.

Hands notification payloads to the Web Push provider (VAPID-signed, via
pywebpush) and classifies the result:

- delivered
- permanently invalid (404/410: the endpoint is gone) → subscriber removed
- transient failure (anything else, including timeouts) → logged and dropped

Deliveries are never retried: another relay may already be carrying the same
event, and the client keeps its own foreground delivery path.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

import requests
import structlog
from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid, VapidException
from py_vapid.utils import b64urlencode
from pywebpush import WebPushException, webpush

from .errors import PermanentEndpointFailure, TransportError
from .metrics import MetricsCollector
from .registry import PushEndpoint, Subscriber, SubscriberRegistry

log = structlog.get_logger()

PERMANENT_STATUS_CODES = frozenset({404, 410})
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_TTL_SECONDS = 86400


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    PERMANENTLY_INVALID = "permanently_invalid"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass
class NotificationPayload:
    title: str
    body: str
    tag: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


class PushSender(Protocol):
    async def send(self, endpoint: PushEndpoint, data: str) -> None:
        """Deliver `data`; raise PermanentEndpointFailure or TransportError."""


class WebPushSender:
    """Web Push provider client. pywebpush is blocking, so it runs in a thread."""

    def __init__(
        self,
        vapid_private_key: str | None,
        vapid_subject: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        ttl: int = DEFAULT_TTL_SECONDS,
    ):
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout
        self._ttl = ttl

    @property
    def configured(self) -> bool:
        return bool(self._vapid_private_key)

    async def send(self, endpoint: PushEndpoint, data: str) -> None:
        if not self._vapid_private_key:
            log.warning("push.not_configured")
            raise TransportError("VAPID private key not configured")
        await asyncio.to_thread(self._send_blocking, endpoint, data)

    def _send_blocking(self, endpoint: PushEndpoint, data: str) -> None:
        try:
            webpush(
                subscription_info=endpoint.to_webpush_dict(),
                data=data,
                vapid_private_key=self._vapid_private_key,
                # pywebpush adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self._vapid_subject},
                timeout=self._timeout,
                ttl=self._ttl,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in PERMANENT_STATUS_CODES:
                raise PermanentEndpointFailure(str(exc), status) from exc
            raise TransportError(str(exc), status) from exc
        except requests.RequestException as exc:
            raise TransportError(str(exc)) from exc
        except (ValueError, VapidException) as exc:
            # Undecodable subscriber keys or a VAPID key/claim py_vapid rejects
            raise TransportError(f"push request could not be built: {exc}") from exc


class PushDispatcher:
    """Delivers notifications and purges subscribers whose endpoint is gone."""

    def __init__(
        self,
        sender: PushSender,
        registry: SubscriberRegistry,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        metrics: MetricsCollector | None = None,
    ):
        self._sender = sender
        self._registry = registry
        self._timeout = timeout
        self._metrics = metrics
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def submit(self, subscriber: Subscriber, payload: NotificationPayload) -> asyncio.Task:
        """Deliver in the background; the caller does not wait on the provider."""
        task = asyncio.create_task(self.deliver(subscriber, payload))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def deliver(
        self, subscriber: Subscriber, payload: NotificationPayload
    ) -> DeliveryOutcome:
        sid = subscriber.subscriber_id[:16]
        try:
            await asyncio.wait_for(
                self._sender.send(subscriber.push_endpoint, payload.to_json()),
                timeout=self._timeout,
            )
        except PermanentEndpointFailure as exc:
            current = self._registry.get(subscriber.subscriber_id)
            # A re-subscribe with a new endpoint may have raced this delivery
            if current is not None and current.push_endpoint == subscriber.push_endpoint:
                self._registry.remove_on_permanent_failure(subscriber.subscriber_id)
                log.info("push.endpoint_removed", subscriber=sid, status=exc.status_code)
            if self._metrics:
                self._metrics.inc("notifications_failed_total")
                self._metrics.inc("endpoints_removed_total")
            return DeliveryOutcome.PERMANENTLY_INVALID
        except (TransportError, asyncio.TimeoutError) as exc:
            log.warning(
                "push.transient_failure",
                subscriber=sid,
                status=getattr(exc, "status_code", None),
                error=str(exc) or type(exc).__name__,
            )
            if self._metrics:
                self._metrics.inc("notifications_failed_total")
            return DeliveryOutcome.TRANSIENT_FAILURE

        log.debug("push.sent", subscriber=sid, tag=payload.tag)
        if self._metrics:
            self._metrics.inc("notifications_sent_total")
        return DeliveryOutcome.DELIVERED


def generate_vapid_keys() -> tuple[str, str]:
    """Return a fresh (public, private) VAPID key pair as base64url raw keys."""
    vapid = Vapid()
    vapid.generate_keys()
    public = vapid.public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    private = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    return b64urlencode(public), b64urlencode(private)
