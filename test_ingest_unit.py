"""
Unit tests for the ingestion pipeline and the paho-mqtt adapter.
No broker is required: paho callbacks are invoked directly with stand-in objects.
"""
import asyncio
from types import SimpleNamespace

import pytest

from topicscope.ingest import Ingestor, build_record, normalize_properties
from topicscope.mqtt_client import MqttSession, parse_broker_url
from topicscope.tree.store import TopicStore


class FakeProperties:
    """Mimics paho.mqtt.properties.Properties.json()."""

    def __init__(self, data):
        self._data = data

    def json(self):
        return dict(self._data)


class FakeClient:
    """Stands in for paho.mqtt.client.Client during disconnect."""

    def __init__(self):
        self.calls = []

    def disconnect(self):
        self.calls.append("disconnect")

    def loop_stop(self):
        self.calls.append("loop_stop")


def _message(topic, payload, **kwargs):
    fields = {"qos": 0, "retain": False, "dup": False, "properties": None}
    fields.update(kwargs)
    return SimpleNamespace(topic=topic, payload=payload, **fields)


# ─────────────────────────────────────────────
# Record construction
# ─────────────────────────────────────────────

class TestBuildRecord:
    def test_decodes_json_with_content_type(self):
        record = build_record("t", b"5", qos=1, retained=True,
                              properties={"ContentType": "application/json"})
        assert record.is_json is True
        assert record.payload_json == 5
        assert record.content_type == "application/json"
        assert record.qos == 1
        assert record.retained is True
        assert record.dup is False

    def test_binary_payload(self):
        record = build_record("t", bytearray(b"\x00\xff"))
        assert record.payload == b"\x00\xff"
        assert record.payload_text is None
        assert record.is_json is False

    def test_unique_ids_and_timestamp(self):
        a = build_record("t", b"x")
        b = build_record("t", b"x")
        assert a.id != b.id
        assert a.ts > 1_600_000_000_000


class TestNormalizeProperties:
    def test_none_and_empty(self):
        assert normalize_properties(None) is None
        assert normalize_properties({}) is None

    def test_paho_like_object(self):
        props = normalize_properties(FakeProperties({"ContentType": "text/plain", "MessageExpiryInterval": 60}))
        assert props == {"ContentType": "text/plain", "MessageExpiryInterval": 60}
        assert list(props) == ["ContentType", "MessageExpiryInterval"]

    def test_nested_and_binary_values(self):
        props = normalize_properties({"UserProperty": [("k", "v")], "CorrelationData": bytearray(b"\x01"),
                                      "nested": {1: {"deep": True}}})
        assert props["UserProperty"] == [["k", "v"]]
        assert props["CorrelationData"] == b"\x01"
        assert props["nested"] == {"1": {"deep": True}}


# ─────────────────────────────────────────────
# Ingestor
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ingestor_batches_into_store():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    ingestor.receive("a/b", b"1")
    ingestor.receive("a/c", b"2")
    assert ingestor.store.message_count == 0
    await asyncio.sleep(0.1)
    assert ingestor.store.message_count == 2
    assert ingestor.store.nodes["a"].children == ["a/b", "a/c"]
    assert ingestor.stats()["messages_received"] == 2


@pytest.mark.asyncio
async def test_ingestor_pause_skips_messages():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    ingestor.pause()
    assert ingestor.receive("a", b"1") is None
    ingestor.resume()
    assert ingestor.receive("a", b"2") is not None
    ingestor.flush()
    assert ingestor.store.message_count == 1
    assert ingestor.messages_received == 1


@pytest.mark.asyncio
async def test_ingestor_disconnect_discards_in_flight():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    ingestor.receive("a", b"1")
    ingestor.disconnect()
    await asyncio.sleep(0.05)
    assert ingestor.store.message_count == 0


@pytest.mark.asyncio
async def test_ingestor_reset():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    ingestor.receive("a", b"1")
    ingestor.flush()
    ingestor.receive("b", b"1")
    ingestor.reset()
    assert ingestor.store.node_count == 0
    assert ingestor.batcher.batch_size == 0
    assert ingestor.messages_received == 0


# ─────────────────────────────────────────────
# MQTT adapter
# ─────────────────────────────────────────────

class TestParseBrokerUrl:
    def test_websocket_tls(self):
        addr = parse_broker_url("wss://test.mosquitto.org:8081/mqtt")
        assert (addr.host, addr.port, addr.transport, addr.tls, addr.path) == (
            "test.mosquitto.org", 8081, "websockets", True, "/mqtt")

    def test_plain_tcp_default_port(self):
        addr = parse_broker_url("mqtt://localhost")
        assert (addr.port, addr.transport, addr.tls) == (1883, "tcp", False)

    def test_mqtts_default_port(self):
        assert parse_broker_url("mqtts://broker").port == 8883

    def test_bad_scheme(self):
        with pytest.raises(ValueError):
            parse_broker_url("http://broker")

    def test_missing_host(self):
        with pytest.raises(ValueError):
            parse_broker_url("mqtt://")


@pytest.mark.asyncio
async def test_on_message_is_marshalled_to_loop():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    session = MqttSession(ingestor, loop=asyncio.get_running_loop())
    client = FakeClient()
    session._client = client
    msg = _message("dev/1/state", b'{"on": true}', qos=1, retain=True,
                   properties=FakeProperties({"ContentType": "application/json"}))
    session._on_message(client, None, msg)
    # Nothing happens until the loop runs the callback
    assert ingestor.messages_received == 0
    await asyncio.sleep(0)
    assert ingestor.messages_received == 1
    ingestor.flush()
    latest = ingestor.store.latest("dev/1/state")
    assert latest.payload_json == {"on": True}
    assert latest.retained is True


@pytest.mark.asyncio
async def test_disconnect_without_client_discards_buffer():
    ingestor = Ingestor(TopicStore(), interval_ms=1000)
    session = MqttSession(ingestor, loop=asyncio.get_running_loop())
    ingestor.receive("a", b"1")
    session.disconnect()
    assert session.status == "disconnected"
    assert ingestor.batcher.batch_size == 0
    assert ingestor.store.message_count == 0


@pytest.mark.asyncio
async def test_disconnect_can_flush_pending():
    ingestor = Ingestor(TopicStore(), interval_ms=1000)
    session = MqttSession(ingestor, loop=asyncio.get_running_loop())
    ingestor.receive("a", b"1")
    session.disconnect(flush_pending=True)
    assert ingestor.store.message_count == 1


@pytest.mark.asyncio
async def test_messages_queued_before_disconnect_are_dropped():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    session = MqttSession(ingestor, loop=asyncio.get_running_loop())
    client = FakeClient()
    session._client = client
    # Network thread hands a message over, then the user disconnects before the loop runs it
    session._on_message(client, None, _message("t", b"late"))
    session.disconnect()
    await asyncio.sleep(0.05)
    assert client.calls == ["disconnect", "loop_stop"]
    assert ingestor.messages_received == 0
    assert ingestor.batcher.batch_size == 0
    assert ingestor.store.message_count == 0


@pytest.mark.asyncio
async def test_messages_from_replaced_client_are_dropped():
    ingestor = Ingestor(TopicStore(), interval_ms=10)
    session = MqttSession(ingestor, loop=asyncio.get_running_loop())
    old, new = FakeClient(), FakeClient()
    session._client = new
    session._on_message(old, None, _message("stale", b"1"))
    session._on_message(new, None, _message("fresh", b"2"))
    await asyncio.sleep(0)
    ingestor.flush()
    assert ingestor.store.get_node("stale") is None
    assert ingestor.store.latest("fresh") is not None


def test_status_must_be_known():
    session = MqttSession(Ingestor(TopicStore()))
    session._set_status("error", "Connection refused")
    assert (session.status, session.last_error) == ("error", "Connection refused")
    with pytest.raises(ValueError):
        session._set_status("sleeping")
    assert session.status == "error"


# ─────────────────────────────────────────────
# Throughput stats
# ─────────────────────────────────────────────

class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_stats_track_last_message_and_rate():
    clock = FakeClock()
    ingestor = Ingestor(TopicStore(), interval_ms=1000, clock=clock)
    assert ingestor.stats()["last_message_ts"] is None
    assert ingestor.stats()["message_rate"] == 0

    for _ in range(3):
        ingestor.receive("a", b"1")
        clock.now += 100
    stats = ingestor.stats()
    assert stats["last_message_ts"] == 1_700_000_000_200
    assert stats["message_rate"] == 3

    # Arrivals older than the window no longer count
    clock.now += 1000
    assert ingestor.message_rate() == 0
    assert ingestor.stats()["last_message_ts"] == 1_700_000_000_200


@pytest.mark.asyncio
async def test_record_timestamp_comes_from_clock():
    clock = FakeClock(now=42)
    ingestor = Ingestor(TopicStore(), interval_ms=1000, clock=clock)
    assert ingestor.receive("a", b"1").ts == 42


@pytest.mark.asyncio
async def test_reset_clears_throughput():
    ingestor = Ingestor(TopicStore(), interval_ms=1000, clock=FakeClock())
    ingestor.receive("a", b"1")
    ingestor.reset()
    assert ingestor.last_message_ts is None
    assert ingestor.message_rate() == 0
