import json

import msgpack
import pytest

from lshbridge.publisher import MqttPublisher


class FakeClient:
    def __init__(self, packet_id=1):
        self.packet_id = packet_id
        self.published = []

    def publish(self, topic, qos, retain, payload):
        self.published.append((topic, qos, retain, payload))
        return self.packet_id


def test_send_raw_publishes_payload():
    client = FakeClient()
    publisher = MqttPublisher(client)
    assert publisher.send_raw("LSH/dev/events", True, 0, b"abc") is True
    assert client.published == [("LSH/dev/events", 0, True, b"abc")]


def test_send_raw_without_client_fails():
    assert MqttPublisher(None).send_raw("t", False, 1, b"x") is False


@pytest.mark.parametrize("topic,payload", [("", b"x"), (None, b"x"), ("t", b""), ("t", None)])
def test_send_raw_rejects_empty_inputs(topic, payload):
    client = FakeClient()
    assert MqttPublisher(client).send_raw(topic, False, 1, payload) is False
    assert client.published == []


def test_send_raw_refused_by_client():
    client = FakeClient(packet_id=0)
    assert MqttPublisher(client).send_raw("t", False, 1, b"x") is False


def test_send_document_compact_json():
    client = FakeClient()
    publisher = MqttPublisher(client)
    assert publisher.send_document({"event": "diagnostic"}, "t", False, 1) is True
    assert client.published[0][3] == b'{"event":"diagnostic"}'
    assert client.published[0][1:3] == (1, False)


def test_send_document_msgpack_round_trip():
    client = FakeClient()
    publisher = MqttPublisher(client, use_msgpack=True)
    doc = {"event": "diagnostic", "pending_ms": 1500, "ok": True}
    assert publisher.send_document(doc, "t") is True
    assert msgpack.unpackb(client.published[0][3], raw=False) == doc


def test_send_document_overflow_is_refused():
    client = FakeClient()
    publisher = MqttPublisher(client, max_size=5)
    assert publisher.send_document({"event": "diagnostic"}, "t") is False
    assert client.published == []


def test_send_document_exact_fit():
    client = FakeClient()
    doc = {"k": 1}
    size = len(json.dumps(doc, separators=(",", ":")))
    publisher = MqttPublisher(client, max_size=size)
    assert publisher.send_document(doc, "t") is True
    assert json.loads(client.published[0][3]) == doc


def test_send_document_without_topic():
    client = FakeClient()
    assert MqttPublisher(client).send_document({"a": 1}, "") is False
    assert client.published == []


def test_send_static_uses_qos1_unretained():
    client = FakeClient()
    publisher = MqttPublisher(client)
    assert publisher.send_static(b"\x81\xa1p\x05", "LSH/dev/events") is True
    assert client.published == [("LSH/dev/events", 1, False, b"\x81\xa1p\x05")]


def test_send_static_rejects_missing_topic_or_payload():
    client = FakeClient()
    publisher = MqttPublisher(client)
    assert publisher.send_static(b"x", "") is False
    assert publisher.send_static(b"", "t") is False
    assert MqttPublisher(None).send_static(b"x", "t") is False
    assert client.published == []