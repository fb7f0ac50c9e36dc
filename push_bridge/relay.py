"""
Relay links.

One managed websocket connection per relay with:
- Automatic reconnection after a delay (optional backoff)
- Aggregate filter re-sent on every (re)connect
- Malformed frames logged and dropped without dropping the connection
- One task per link, so a wedged relay never blocks the others
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Coroutine

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ProtocolAnomaly, TransportError
from .filters import RelayFilter
from .metrics import MetricsCollector
from .protocol import DEFAULT_SUBSCRIPTION_ID, RelayEvent, close_frame, parse_frame

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_DELAY_SECONDS = 5.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 1.0
CONNECT_TIMEOUT_SECONDS = 10.0

EventHandler = Callable[[RelayEvent, str], Coroutine[Any, Any, Any]]
FilterSource = Callable[[str], RelayFilter]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RelayLink:
    """A single relay connection producing an endless stream of events."""

    def __init__(
        self,
        url: str,
        filter_source: FilterSource,
        subscription_id: str = DEFAULT_SUBSCRIPTION_ID,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        reconnect_max: float = RECONNECT_MAX_SECONDS,
        reconnect_multiplier: float = RECONNECT_MULTIPLIER,
        metrics: MetricsCollector | None = None,
    ):
        self.url = url
        self._filter_source = filter_source
        self._subscription_id = subscription_id
        self._connect_timeout = connect_timeout
        self._reconnect_delay = reconnect_delay
        self._reconnect_max = reconnect_max
        self._reconnect_multiplier = reconnect_multiplier
        self._metrics = metrics

        self._state = ConnectionState.DISCONNECTED
        self._ws: Any = None
        self._active_filter: RelayFilter | None = None
        self._send_lock = asyncio.Lock()
        self._closed = False
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._last_event_at: float | None = None
        self._reconnect_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def active_filter(self) -> RelayFilter | None:
        return self._active_filter

    @property
    def last_event_at(self) -> float | None:
        return self._last_event_at

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    # --- Lifecycle ---

    def start(self, handler: EventHandler) -> None:
        """Run the link in its own task, handing every event to `handler`."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._pump(handler), name=f"relay:{self.url}"
            )

    async def close(self) -> None:
        """Stop reconnecting and cancel pending connect/read operations."""
        self._closed = True
        ws = self._ws
        if ws is not None and self.connected:
            try:
                async with self._send_lock:
                    await asyncio.wait_for(ws.send(close_frame(self._subscription_id)), 1.0)
            except (ConnectionClosed, OSError, asyncio.TimeoutError):
                pass
        for task in [self._task, *self._pending]:
            if task is not None:
                task.cancel()
        for task in [self._task, *self._pending]:
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pending.clear()
        await self._disconnect()
        log.info("relay.closed", relay=self.url)

    async def connect(self) -> None:
        """Open the socket and (re)establish the aggregate subscription."""
        self._state = ConnectionState.CONNECTING
        log.debug("relay.connecting", relay=self.url)
        try:
            self._ws = await websockets.connect(
                self.url, open_timeout=self._connect_timeout
            )
        except (OSError, ValueError, asyncio.TimeoutError, WebSocketException) as exc:
            self._state = ConnectionState.DISCONNECTED
            raise TransportError(f"connect to {self.url} failed: {exc}") from exc

        self._state = ConnectionState.CONNECTED
        self._active_filter = None
        log.info("relay.connected", relay=self.url)
        await self._send_current_filter()

    async def send(self, frame: str) -> None:
        ws = self._ws
        if ws is None or not self.connected:
            raise TransportError(f"relay {self.url} is not connected")
        try:
            async with self._send_lock:
                await ws.send(frame)
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"send to {self.url} failed: {exc}") from exc

    def refresh_filter(self) -> None:
        """Re-send the aggregate filter if it changed. No-op while disconnected."""
        if not self.connected:
            return
        task = asyncio.create_task(self._send_current_filter())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # --- Event stream ---

    async def events(self) -> AsyncIterator[RelayEvent]:
        """Yield events forever, reconnecting as needed, until closed."""
        backoff = self._reconnect_delay

        while not self._closed:
            try:
                await self.connect()
                backoff = self._reconnect_delay
                async for raw in self._ws:
                    event = self._read_event(raw)
                    if event is not None:
                        yield event
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                log.warning("relay.connect_failed", relay=self.url, error=str(exc))
            except (WebSocketException, OSError) as exc:
                log.warning("relay.connection_lost", relay=self.url, error=str(exc))
            except Exception:
                log.exception("relay.unexpected_error", relay=self.url)
            finally:
                await self._disconnect()

            if self._closed:
                break

            self._reconnect_count += 1
            if self._metrics:
                self._metrics.inc("relay_reconnects_total")
            log.info(
                "relay.reconnecting",
                relay=self.url,
                delay=backoff,
                attempt=self._reconnect_count,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * self._reconnect_multiplier, self._reconnect_max)

    def _read_event(self, raw: str | bytes) -> RelayEvent | None:
        try:
            frame = parse_frame(raw)
        except ProtocolAnomaly as exc:
            if self._metrics:
                self._metrics.inc("relay_frames_malformed_total")
            log.warning("relay.malformed_frame", relay=self.url, error=str(exc))
            return None

        if frame.type == "EVENT" and frame.event is not None:
            self._last_event_at = time.time()
            if self._metrics:
                self._metrics.inc("relay_events_total")
            log.debug(
                "relay.event",
                relay=self.url,
                kind=frame.event.kind,
                event_id=frame.event.id[:8],
            )
            return frame.event
        if frame.type == "EOSE":
            log.debug("relay.eose", relay=self.url)
        elif frame.type == "NOTICE":
            log.info("relay.notice", relay=self.url, message=frame.message)
        elif frame.type == "CLOSED":
            log.warning(
                "relay.subscription_closed",
                relay=self.url,
                subscription=frame.subscription_id,
                message=frame.message,
            )
        else:
            log.debug("relay.frame_ignored", relay=self.url, type=frame.type)
        return None

    async def _pump(self, handler: EventHandler) -> None:
        async for event in self.events():
            try:
                await handler(event, self.url)
            except Exception:
                log.exception("relay.handler_error", relay=self.url, event_id=event.id[:8])

    async def _send_current_filter(self) -> None:
        current = self._filter_source(self.url)
        if current == self._active_filter:
            log.debug("relay.filter_unchanged", relay=self.url)
            return
        previous = self._active_filter
        self._active_filter = current
        try:
            await self.send(current.to_frame(self._subscription_id))
        except TransportError as exc:
            # The reconnect path re-sends whatever is current then.
            self._active_filter = previous
            log.warning("relay.filter_send_failed", relay=self.url, error=str(exc))
            return
        log.info(
            "relay.subscribed",
            relay=self.url,
            channels=len(current.channel_ids),
            subscribers=len(current.subscriber_ids),
            since=current.since,
        )

    async def _disconnect(self) -> None:
        was_connected = self.connected
        self._state = ConnectionState.DISCONNECTED
        self._active_filter = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError):
                pass
        if was_connected:
            log.info("relay.disconnected", relay=self.url)


class RelayPool:
    """The set of relay links, keyed by url. Links live until the pool closes."""

    def __init__(
        self,
        filter_source: FilterSource,
        handler: EventHandler,
        link_factory: Callable[[str], RelayLink] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._filter_source = filter_source
        self._handler = handler
        self._link_factory = link_factory or self._default_link
        self._metrics = metrics
        self._links: dict[str, RelayLink] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._links)

    def get(self, url: str) -> RelayLink | None:
        return self._links.get(url)

    def links(self) -> list[RelayLink]:
        return list(self._links.values())

    def ensure(self, url: str) -> RelayLink:
        """Return the link for `url`, creating and starting it on first use."""
        link = self._links.get(url)
        if link is None:
            link = self._link_factory(url)
            self._links[url] = link
            link.start(self._handler)
            log.info("relay_pool.link_created", relay=url, total=len(self._links))
        return link

    def states(self) -> dict[str, ConnectionState]:
        return {url: link.state for url, link in self._links.items()}

    def connected_count(self) -> int:
        return sum(1 for link in self._links.values() if link.connected)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        links = list(self._links.values())
        self._links.clear()
        await asyncio.gather(*(link.close() for link in links))

    def _default_link(self, url: str) -> RelayLink:
        return RelayLink(url, self._filter_source, metrics=self._metrics)
