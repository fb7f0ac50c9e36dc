"""
Shared fixtures for bridge tests.
"""

import pytest

from .mock_relay import FakeSender, MockRelay, pick_port


@pytest.fixture
async def relay():
    r = MockRelay()
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
async def relay2():
    r = MockRelay()
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def bridge_config_dict():
    return {
        "server": {"host": "127.0.0.1", "port": pick_port()},
        "relays": {
            "connect_timeout_seconds": 2,
            "reconnect_delay_seconds": 0.05,
            "reconnect_max_seconds": 0.2,
        },
        "push": {
            "vapid_public_key_env": "TEST_VAPID_PUBLIC_KEY",
            "vapid_private_key_env": "TEST_VAPID_PRIVATE_KEY",
            "request_timeout_seconds": 2,
        },
        "dedup": {"retention_seconds": 60, "sweep_interval_seconds": 60},
        "logging": {"level": "debug", "format": "text"},
        "metrics": {"enabled": True},
    }
