"""
Main bridge orchestrator.

Wires the components together (registry → filter aggregator → relay links →
event router → push dispatcher) and owns the lifecycle: startup, periodic
maintenance, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import structlog

from .api import ApiServer
from .config import BridgeConfig
from .dedup import DedupTable
from .filters import FilterAggregator
from .metrics import MetricsCollector
from .push import PushDispatcher, PushSender, WebPushSender
from .registry import SubscriberRegistry
from .relay import RelayLink, RelayPool
from .router import EventRouter

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0


class PushBridge:
    """
    Main bridge process: relay links, event routing, push delivery, HTTP API.
    """

    def __init__(self, config: BridgeConfig, sender: PushSender | None = None):
        self._config = config
        self._metrics = MetricsCollector()
        self.registry = SubscriberRegistry()
        self.dedup = DedupTable(config.dedup.retention_seconds)
        self.aggregator = FilterAggregator(self.registry)

        if sender is None:
            sender = WebPushSender(
                vapid_private_key=config.push.vapid_private_key,
                vapid_subject=config.push.vapid_subject,
                timeout=config.push.request_timeout_seconds,
                ttl=config.push.ttl_seconds,
            )
        self.dispatcher = PushDispatcher(
            sender,
            self.registry,
            timeout=config.push.request_timeout_seconds,
            metrics=self._metrics,
        )
        self.router = EventRouter(
            self.registry, self.dedup, self.dispatcher, metrics=self._metrics
        )
        self.relays = RelayPool(
            filter_source=self.aggregator.compute,
            handler=self.router.route,
            link_factory=self._make_link,
            metrics=self._metrics,
        )
        self._api = ApiServer(
            self.registry,
            self.stats,
            host=config.server.host,
            port=config.server.port,
            metrics=self._metrics if config.metrics.enabled else None,
            vapid_public_key=config.push.vapid_public_key,
        )
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def _make_link(self, url: str) -> RelayLink:
        relays = self._config.relays
        return RelayLink(
            url,
            self.aggregator.compute,
            subscription_id=relays.subscription_id,
            connect_timeout=relays.connect_timeout_seconds,
            reconnect_delay=relays.reconnect_delay_seconds,
            reconnect_max=relays.reconnect_max_seconds,
            reconnect_multiplier=relays.reconnect_multiplier,
            metrics=self._metrics,
        )

    async def start(self) -> None:
        """Start the bridge: bind filters to relay links, sweeper, HTTP API."""
        log.info("bridge.starting")

        if not self._config.push.vapid_private_key:
            log.warning(
                "bridge.vapid_missing",
                env=self._config.push.vapid_private_key_env,
            )

        self.aggregator.bind(self.relays)
        self._tasks.append(
            asyncio.create_task(
                self.dedup.run_sweeper(self._config.dedup.sweep_interval_seconds),
                name="dedup-sweeper",
            )
        )

        await self._api.start()
        log.info(
            "bridge.api_started",
            host=self._config.server.host,
            port=self._config.server.port,
        )

        self._running = True
        log.info("bridge.started")

    async def stop(self) -> None:
        """Graceful shutdown: close relays, let deliveries finish, stop the API."""
        if not self._running:
            return
        self._running = False
        log.info("bridge.stopping")

        # 1. Stop receiving events
        await self.relays.close()
        log.info("bridge.relays_closed")

        # 2. In-flight deliveries are independent of the relays; let them finish
        in_flight = self.dispatcher.in_flight
        await self.dispatcher.drain()
        if in_flight:
            log.info("bridge.deliveries_drained", count=in_flight)

        # 3. Background tasks and HTTP
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._api.stop()

        log.info("bridge.stopped")

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()

        # Periodic health gauges
        try:
            while not self._shutdown_event.is_set():
                self.update_gauges()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.metrics.health_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    def stats(self) -> dict[str, Any]:
        """Read-only snapshot of subscribers and relay connectivity."""
        return {
            "totalSubscriptions": len(self.registry),
            "relays": [
                {
                    "url": link.url,
                    "state": link.state.value,
                    "reconnects": link.reconnect_count,
                    "lastEventAt": link.last_event_at,
                }
                for link in self.relays.links()
            ],
            "dedupEntries": len(self.dedup),
            "inFlightDeliveries": self.dispatcher.in_flight,
        }

    def update_gauges(self) -> None:
        self._metrics.set_gauge("subscribers", len(self.registry))
        self._metrics.set_gauge("relays_connected", self.relays.connected_count())
        self._metrics.set_gauge("dedup_entries", len(self.dedup))
        self._metrics.clear_gauge("relay_connected")
        for link in self.relays.links():
            self._metrics.set_gauge("relay_connected", int(link.connected), relay=link.url)
