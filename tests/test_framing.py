import pytest

from lshbridge.framing import (
    FRAME_END,
    FRAME_ESCAPE,
    FRAME_ESCAPED_END,
    FRAME_ESCAPED_ESCAPE,
    FrameConsumeResult,
    FrameReceiver,
    FrameWriter,
    encode_frame,
)


class LimitedSink:
    def __init__(self, limit=None):
        self.limit = limit
        self.received = bytearray()

    def write(self, data):
        if self.limit is None:
            accepted = len(data)
        else:
            accepted = max(0, min(len(data), self.limit - len(self.received)))
        self.received += data[:accepted]
        return accepted


def feed(receiver, data, now_ms=0):
    return [receiver.consume_byte(byte, now_ms) for byte in data]


PAYLOADS = [
    b"\x82\xa1p\x0c",
    bytes([FRAME_END]),
    bytes([FRAME_ESCAPE]),
    bytes([FRAME_END, FRAME_ESCAPE, FRAME_ESCAPED_END, FRAME_ESCAPED_ESCAPE]),
    bytes(range(256)),
]


def test_encode_frame_wire_bytes():
    encoded = encode_frame(bytes([0x01, FRAME_END, FRAME_ESCAPE]))
    assert encoded == bytes(
        [FRAME_END, 0x01, FRAME_ESCAPE, FRAME_ESCAPED_END, FRAME_ESCAPE, FRAME_ESCAPED_ESCAPE, FRAME_END]
    )


@pytest.mark.parametrize("payload", PAYLOADS)
def test_encoded_body_has_no_bare_delimiter(payload):
    body = encode_frame(payload)[1:-1]
    assert FRAME_END not in body


@pytest.mark.parametrize("payload", PAYLOADS)
def test_receiver_round_trip(payload):
    receiver = FrameReceiver(capacity=512)
    results = feed(receiver, encode_frame(payload))
    assert results[-1] is FrameConsumeResult.FRAME_COMPLETE
    assert all(r is FrameConsumeResult.INCOMPLETE for r in results[:-1])
    assert receiver.frame() == payload


def test_back_to_back_frames_after_reset():
    receiver = FrameReceiver(capacity=16)
    feed(receiver, encode_frame(b"one"))
    assert receiver.frame() == b"one"
    receiver.reset()
    results = feed(receiver, encode_frame(b"two"))
    assert results[-1] is FrameConsumeResult.FRAME_COMPLETE
    assert receiver.frame() == b"two"


def test_empty_frames_are_ignored():
    receiver = FrameReceiver(capacity=4)
    results = feed(receiver, bytes([FRAME_END, FRAME_END, FRAME_END]))
    assert results == [FrameConsumeResult.INCOMPLETE] * 3
    assert receiver.frame() == b""


def test_oversize_frame_is_discarded_then_recovers():
    receiver = FrameReceiver(capacity=2)
    results = feed(receiver, encode_frame(b"abc"))
    assert results[-1] is FrameConsumeResult.FRAME_DISCARDED
    assert receiver.frame() == b""
    results = feed(receiver, encode_frame(b"ok"))
    assert results[-1] is FrameConsumeResult.FRAME_COMPLETE
    assert receiver.frame() == b"ok"


def test_oversize_escaped_byte_is_discarded():
    receiver = FrameReceiver(capacity=1)
    results = feed(receiver, encode_frame(bytes([0x01, FRAME_END])))
    assert results[-1] is FrameConsumeResult.FRAME_DISCARDED


def test_invalid_escape_followed_by_end_discards():
    receiver = FrameReceiver(capacity=8)
    results = feed(receiver, bytes([FRAME_END, 0x01, FRAME_ESCAPE, FRAME_END]))
    assert results[-1] is FrameConsumeResult.FRAME_DISCARDED
    assert receiver.frame() == b""


def test_invalid_escape_drains_until_end():
    receiver = FrameReceiver(capacity=8)
    results = feed(receiver, bytes([FRAME_END, 0x01, FRAME_ESCAPE, 0x02, 0x03, 0x04]))
    assert all(r is FrameConsumeResult.INCOMPLETE for r in results)
    assert receiver.frame() == b""
    assert receiver.consume_byte(FRAME_END, 0) is FrameConsumeResult.FRAME_DISCARDED
    results = feed(receiver, encode_frame(b"hi"))
    assert receiver.frame() == b"hi"


def test_reset_if_idle_drops_stale_partial_frame():
    receiver = FrameReceiver(capacity=8)
    feed(receiver, bytes([FRAME_END, 0x10, 0x11]), now_ms=100)
    receiver.reset_if_idle(now_ms=200, idle_timeout_ms=50)
    assert receiver.frame() == b""
    assert receiver.consume_byte(FRAME_END, 210) is FrameConsumeResult.INCOMPLETE


def test_reset_if_idle_keeps_recent_partial_frame():
    receiver = FrameReceiver(capacity=8)
    feed(receiver, bytes([FRAME_END, 0x10, 0x11]), now_ms=100)
    receiver.reset_if_idle(now_ms=120, idle_timeout_ms=50)
    assert receiver.frame() == bytes([0x10, 0x11])
    assert receiver.consume_byte(FRAME_END, 121) is FrameConsumeResult.FRAME_COMPLETE


def test_reset_if_idle_zero_timeout_is_disabled():
    receiver = FrameReceiver(capacity=8)
    feed(receiver, bytes([FRAME_END, 0x10]), now_ms=0)
    receiver.reset_if_idle(now_ms=10_000, idle_timeout_ms=0)
    assert receiver.frame() == bytes([0x10])


def test_reset_if_idle_clears_pending_escape():
    receiver = FrameReceiver(capacity=8)
    feed(receiver, bytes([FRAME_END, FRAME_ESCAPE]), now_ms=5)
    receiver.reset_if_idle(now_ms=100, idle_timeout_ms=10)
    assert receiver.consume_byte(0x42, 101) is FrameConsumeResult.INCOMPLETE
    assert receiver.frame() == bytes([0x42])


@pytest.mark.parametrize("payload", PAYLOADS)
def test_writer_matches_encode_frame(payload):
    sink = LimitedSink()
    writer = FrameWriter(sink)
    assert writer.begin_frame() is True
    assert writer.write(payload) == len(payload)
    assert writer.end_frame() is True
    assert bytes(sink.received) == encode_frame(payload)


def test_writer_single_reserved_byte():
    sink = LimitedSink()
    writer = FrameWriter(sink)
    assert writer.write(FRAME_ESCAPE) == 1
    assert bytes(sink.received) == bytes([FRAME_ESCAPE, FRAME_ESCAPED_ESCAPE])


def test_writer_reports_short_write():
    sink = LimitedSink(limit=3)
    writer = FrameWriter(sink)
    payload = b"abcdef"
    accepted = writer.write(payload)
    assert accepted == len(sink.received)
    assert accepted < len(payload)


def test_writer_stops_on_rejected_escape():
    sink = LimitedSink(limit=2)
    writer = FrameWriter(sink)
    accepted = writer.write(bytes([0x01, FRAME_END, 0x02]))
    assert accepted == 1


def test_writer_none_and_failed_delimiter():
    writer = FrameWriter(LimitedSink(limit=0))
    assert writer.write(None) == 0
    assert writer.begin_frame() is False
    assert writer.end_frame() is False


def test_writer_output_decodes_back():
    payload = bytes([FRAME_END, 0x00, FRAME_ESCAPE, 0x7F])
    sink = LimitedSink()
    writer = FrameWriter(sink)
    writer.begin_frame()
    writer.write(payload)
    writer.end_frame()
    receiver = FrameReceiver(capacity=16)
    results = feed(receiver, bytes(sink.received))
    assert results[-1] is FrameConsumeResult.FRAME_COMPLETE
    assert receiver.frame() == payload