"""
HTTP surface.

Exposes:
- GET  /vapid-public-key — key the browser needs to create a push subscription
- POST /subscribe        — register or replace a device
- POST /unsubscribe      — remove a device
- GET  /health           — JSON health status
- GET  /stats            — subscriber count and per-relay connection state
- GET  /metrics          — Prometheus-compatible metrics
"""

from __future__ import annotations

import json
from typing import Any, Callable

import structlog
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRequest
from .metrics import MetricsCollector
from .registry import PushEndpoint, SubscriberRegistry

log = structlog.get_logger()

StatsProvider = Callable[[], dict[str, Any]]


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionInfo(BaseModel):
    endpoint: str
    keys: SubscriptionKeys


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscriber_id: str = Field(alias="pubkey")
    subscription: SubscriptionInfo
    channel_ids: list[str] = Field(alias="groupIds")
    relay_urls: list[str] = Field(default_factory=list, alias="relays")


class UnsubscribeRequest(BaseModel):
    subscriber_id: str = Field(alias="pubkey")


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"error": message}, status=status)


class ApiServer:
    """Small aiohttp server in front of the registry and the bridge stats."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        stats: StatsProvider,
        host: str = "0.0.0.0",
        port: int = 3000,
        metrics: MetricsCollector | None = None,
        vapid_public_key: str | None = None,
    ):
        self._registry = registry
        self._stats = stats
        self._host = host
        self._port = port
        self._metrics = metrics
        self._vapid_public_key = vapid_public_key
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/vapid-public-key", self._vapid_handler)
        app.router.add_post("/subscribe", self._subscribe_handler)
        app.router.add_post("/unsubscribe", self._unsubscribe_handler)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/stats", self._stats_handler)
        if self._metrics is not None:
            app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _vapid_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"publicKey": self._vapid_public_key})

    async def _subscribe_handler(self, request: web.Request) -> web.Response:
        try:
            body = SubscribeRequest.model_validate(await request.json())
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            log.info("api.subscribe_rejected", error=str(exc).splitlines()[0])
            return _error("Missing required fields: pubkey, subscription, groupIds, relays")

        endpoint = PushEndpoint(
            endpoint=body.subscription.endpoint,
            p256dh=body.subscription.keys.p256dh,
            auth=body.subscription.keys.auth,
        )
        try:
            self._registry.subscribe(
                body.subscriber_id, endpoint, body.channel_ids, body.relay_urls
            )
        except InvalidRequest as exc:
            return _error(str(exc))
        return web.json_response({"success": True, "message": "Subscription registered"})

    async def _unsubscribe_handler(self, request: web.Request) -> web.Response:
        try:
            body = UnsubscribeRequest.model_validate(await request.json())
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
            return _error("Missing pubkey")
        if not body.subscriber_id:
            return _error("Missing pubkey")

        self._registry.unsubscribe(body.subscriber_id)
        return web.json_response({"success": True, "message": "Unsubscribed"})

    async def _health_handler(self, request: web.Request) -> web.Response:
        stats = self._stats()
        relays = stats["relays"]
        connected = [r["url"] for r in relays if r["state"] == "connected"]
        body = {
            "status": "ok" if len(connected) == len(relays) else "degraded",
            "subscriptions": stats["totalSubscriptions"],
            "relays": {"connected": connected, "total": len(relays)},
        }
        return web.json_response(body)

    async def _stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._stats())

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        assert self._metrics
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
