"""
In-process mock relay and fake push sender for bridge tests.
"""

import asyncio
import base64
import hashlib
import json
import random
import time
import uuid

import websockets

from push_bridge.errors import PermanentEndpointFailure, TransportError
from push_bridge.registry import PushEndpoint


class MockRelay:
    """A websocket relay that records REQ frames and publishes events on demand."""

    def __init__(self):
        self.requests: list[list] = []
        self.closes: list[list] = []
        self.connection_count = 0
        self._clients: set = set()
        self._server = None
        self.url = ""

    async def start(self):
        self._server = await websockets.serve(self._handler, "127.0.0.1", 0)
        port = next(iter(self._server.sockets)).getsockname()[1]
        self.url = f"ws://127.0.0.1:{port}"

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def _handler(self, websocket):
        self._clients.add(websocket)
        self.connection_count += 1
        try:
            async for raw in websocket:
                msg = json.loads(raw)
                if msg[0] == "REQ":
                    self.requests.append(msg)
                elif msg[0] == "CLOSE":
                    self.closes.append(msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def last_request(self) -> list | None:
        return self.requests[-1] if self.requests else None

    async def send_raw(self, text: str):
        for ws in list(self._clients):
            await ws.send(text)

    async def publish(self, event: dict, subscription_id: str = "mdk-push"):
        await self.send_raw(json.dumps(["EVENT", subscription_id, event]))

    async def drop_clients(self):
        for ws in list(self._clients):
            await ws.close(code=1001)


class FakeSender:
    """Push sender that records deliveries and fails on request."""

    def __init__(self):
        self.sent: list[tuple[PushEndpoint, dict]] = []
        self.permanent: set[str] = set()
        self.transient: set[str] = set()
        self.delay = 0.0

    async def send(self, endpoint: PushEndpoint, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if endpoint.endpoint in self.permanent:
            raise PermanentEndpointFailure("gone", 410)
        if endpoint.endpoint in self.transient:
            raise TransportError("unavailable", 503)
        self.sent.append((endpoint, json.loads(data)))

    def sent_to(self, endpoint_url: str) -> list[dict]:
        return [payload for ep, payload in self.sent if ep.endpoint == endpoint_url]


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def endpoint_for(name: str) -> PushEndpoint:
    """A deterministic endpoint whose keys have browser-shaped lengths."""
    seed = name.encode()
    return PushEndpoint(
        endpoint=f"https://push.example.com/{name}",
        p256dh=b64url(b"\x04" + hashlib.sha512(seed).digest()),
        auth=b64url(hashlib.sha256(seed).digest()[:16]),
    )


def make_event(
    channel: str | None = None,
    author: str = "author-x",
    kind: int = 445,
    event_id: str | None = None,
    recipient: str | None = None,
) -> dict:
    tags = []
    if channel is not None:
        tags.append(["h", channel])
    if recipient is not None:
        tags.append(["p", recipient])
    return {
        "id": event_id or uuid.uuid4().hex,
        "pubkey": author,
        "kind": kind,
        "created_at": int(time.time()),
        "tags": tags,
        "content": "ciphertext",
        "sig": "00" * 64,
    }


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def pick_port() -> int:
    return random.randint(19000, 19999)


