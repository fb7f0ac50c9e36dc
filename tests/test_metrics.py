"""Tests for metrics collection."""

from push_bridge.metrics import MetricsCollector


def test_counter_increment():
    m = MetricsCollector()
    m.inc("notifications_sent_total")
    m.inc("notifications_sent_total")
    assert m.get("notifications_sent_total") == 2


def test_gauge_set():
    m = MetricsCollector()
    m.set_gauge("relays_connected", 3)
    assert m.get("relays_connected") == 3


def test_labelled_gauges_are_separate_series():
    m = MetricsCollector()
    m.set_gauge("relay_connected", 1, relay="wss://a")
    m.set_gauge("relay_connected", 0, relay="wss://b")
    assert m.get("relay_connected", relay="wss://a") == 1
    assert m.get("relay_connected", relay="wss://b") == 0

    m.clear_gauge("relay_connected")
    assert m.get("relay_connected", relay="wss://a") == 0


def test_prometheus_format():
    m = MetricsCollector()
    m.inc("notifications_sent_total", 5)
    m.set_gauge("relays_connected", 2)
    m.set_gauge("relay_connected", 1, relay="wss://relay.example")
    text = m.to_prometheus()
    assert "# TYPE push_bridge_notifications_sent_total counter" in text
    assert "push_bridge_notifications_sent_total 5" in text
    assert "push_bridge_relays_connected 2" in text
    assert 'push_bridge_relay_connected{relay="wss://relay.example"} 1' in text
    assert "push_bridge_uptime_seconds" in text
    assert text.count("# TYPE push_bridge_relay_connected gauge") == 1
