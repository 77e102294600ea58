"""MQTT publishing helpers used by the bridge runtime."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import msgpack

from lshbridge.writers import FixedBufferWriter

MQTT_PUBLISH_MESSAGE_MAX_SIZE = 1024
DEFAULT_QOS = 1


class _MqttClient(Protocol):
    def publish(self, topic: str, qos: int, retain: bool, payload: bytes) -> int: ...


class MqttPublisher:
    """Publish raw, document or pre-serialized payloads through an MQTT client.

    ``client`` needs ``publish(topic, qos, retain, payload)`` returning a
    packet id, where ``0`` means the publish was refused. ``client`` may be
    ``None`` until the MQTT session exists; every publish then fails.
    Documents are serialized as compact JSON, or as MsgPack when
    ``use_msgpack`` is set, and must fit in ``max_size`` bytes.
    """

    def __init__(
        self,
        client: Optional[_MqttClient] = None,
        max_size: int = MQTT_PUBLISH_MESSAGE_MAX_SIZE,
        use_msgpack: bool = False,
    ) -> None:
        self.client = client
        self.max_size = max_size
        self.use_msgpack = use_msgpack

    def send_raw(self, topic: Optional[str], retain: bool, qos: int, payload: Optional[bytes]) -> bool:
        """Publish already-serialized bytes; return True if the client accepted them."""
        if self.client is None or not topic or not payload:
            return False
        return self.client.publish(topic, qos, retain, bytes(payload)) != 0

    def _serialize(self, doc: Any) -> bytes:
        if self.use_msgpack:
            return msgpack.packb(doc)
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def send_document(self, doc: Any, topic: Optional[str], retain: bool = False, qos: int = DEFAULT_QOS) -> bool:
        """Serialize ``doc`` in the configured codec and publish it.

        Returns False if there is no client or topic, or if the serialized
        payload is empty or does not fit in ``max_size`` bytes.
        """
        if self.client is None or not topic:
            return False
        buffer = FixedBufferWriter(self.max_size)
        buffer.write(self._serialize(doc))
        if buffer.size() == 0 or buffer.overflowed():
            return False
        return self.send_raw(topic, retain, qos, buffer.data())

    def send_static(self, payload: Optional[bytes], topic: Optional[str]) -> bool:
        """Publish a pre-serialized payload on ``topic`` (the events topic), unretained at QoS 1."""
        if self.client is None or not topic:
            return False
        if not payload:
            return False
        return self.send_raw(topic, False, DEFAULT_QOS, payload)