"""
Integration tests: relays → bridge → push provider.
"""

import asyncio

import pytest

from push_bridge.bridge import PushBridge
from push_bridge.config import BridgeConfig

from .mock_relay import endpoint_for, make_event, wait_until


@pytest.fixture
async def bridge(bridge_config_dict, sender):
    config = BridgeConfig.model_validate(bridge_config_dict)
    b = PushBridge(config, sender=sender)
    await b.start()
    yield b
    await b.stop()


def subscribed(relay, channel):
    return lambda: bool(relay.requests) and channel in relay.last_request[2]["#h"]


async def test_duplicate_event_across_relays_notifies_once(bridge, sender, relay, relay2):
    bridge.registry.subscribe("A", endpoint_for("A"), ["C1"], [relay.url, relay2.url])
    assert await wait_until(subscribed(relay, "C1"))
    assert await wait_until(subscribed(relay2, "C1"))

    event = make_event(channel="C1", author="X")
    await relay.publish(event)
    await asyncio.sleep(0.05)
    await relay2.publish(event)

    assert await wait_until(lambda: sender.sent_to(endpoint_for("A").endpoint))
    await asyncio.sleep(0.2)
    await bridge.dispatcher.drain()

    [payload] = sender.sent_to(endpoint_for("A").endpoint)
    assert payload["data"]["eventId"] == event["id"]
    assert payload["data"]["relay"] == relay.url
    assert bridge.metrics.get("notifications_deduplicated_total") == 1

    # A's own event produces nothing for A
    await relay.publish(make_event(channel="C1", author="A"))
    await asyncio.sleep(0.2)
    await bridge.dispatcher.drain()
    assert len(sender.sent_to(endpoint_for("A").endpoint)) == 1


async def test_dead_endpoint_is_purged(bridge, sender, relay):
    bridge.registry.subscribe("A", endpoint_for("A"), ["C1"], [relay.url])
    bridge.registry.subscribe("B", endpoint_for("B"), ["C1"], [relay.url])
    sender.permanent.add(endpoint_for("B").endpoint)
    assert await wait_until(lambda: bool(relay.requests) and relay.last_request[3]["#p"] == ["A", "B"])

    await relay.publish(make_event(channel="C1", author="X"))
    assert await wait_until(lambda: "B" not in bridge.registry)
    assert {s.subscriber_id for s in bridge.registry.find_interested("C1")} == {"A"}
    # The relay filter no longer carries B
    assert await wait_until(lambda: relay.last_request[3]["#p"] == ["A"])

    attempts_before = bridge.metrics.get("notifications_failed_total")
    await relay.publish(make_event(channel="C1", author="X"))
    assert await wait_until(lambda: len(sender.sent_to(endpoint_for("A").endpoint)) == 2)
    await bridge.dispatcher.drain()
    assert bridge.metrics.get("notifications_failed_total") == attempts_before


async def test_unsubscribe_then_event_produces_nothing(bridge, sender, relay):
    bridge.registry.subscribe("A", endpoint_for("A"), ["C1"], [relay.url])
    assert await wait_until(subscribed(relay, "C1"))

    bridge.registry.unsubscribe("A")
    await relay.publish(make_event(channel="C1", author="X"))
    await asyncio.sleep(0.2)
    await bridge.dispatcher.drain()
    assert sender.sent == []
    # The relay link stays up with an empty filter
    assert await wait_until(lambda: relay.last_request[2]["#h"] == [])
    assert bridge.relays.get(relay.url).connected


async def test_reconnect_resumes_delivery(bridge, sender, relay):
    bridge.registry.subscribe("A", endpoint_for("A"), ["C1"], [relay.url])
    assert await wait_until(subscribed(relay, "C1"))

    await relay.drop_clients()
    assert await wait_until(lambda: len(relay.requests) >= 2)
    assert relay.last_request[2]["#h"] == ["C1"]
    assert await wait_until(lambda: bridge.relays.get(relay.url).connected)

    await relay.publish(make_event(channel="C1", author="X"))
    assert await wait_until(lambda: len(sender.sent) == 1)


async def test_welcome_notification(bridge, sender, relay):
    bridge.registry.subscribe("A", endpoint_for("A"), [], [relay.url])
    assert await wait_until(lambda: bool(relay.requests) and relay.last_request[3]["#p"] == ["A"])

    await relay.publish(make_event(kind=444, recipient="A", author="X"))
    assert await wait_until(lambda: len(sender.sent) == 1)
    assert sender.sent[0][1]["title"] == "New group invitation"


async def test_stop_lets_deliveries_finish(bridge_config_dict, sender, relay):
    sender.delay = 0.3
    bridge = PushBridge(BridgeConfig.model_validate(bridge_config_dict), sender=sender)
    await bridge.start()
    bridge.registry.subscribe("A", endpoint_for("A"), ["C1"], [relay.url])
    assert await wait_until(subscribed(relay, "C1"))

    await relay.publish(make_event(channel="C1", author="X"))
    assert await wait_until(lambda: bridge.dispatcher.in_flight == 1)
    await bridge.stop()

    assert len(sender.sent) == 1
    assert bridge.relays.closed
