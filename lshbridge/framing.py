"""SLIP-like byte-stuffed framing for binary payloads on a serial link.

A frame is ``END + escaped(payload) + END``; inside the body the reserved
``END`` and ``ESCAPE`` bytes are replaced by ``ESCAPE`` followed by
``ESCAPED_END`` or ``ESCAPED_ESCAPE``.
"""

from __future__ import annotations

import enum
from typing import Union

from lshbridge.writers import ByteSink

FRAME_END = 0xC0
FRAME_ESCAPE = 0xDB
FRAME_ESCAPED_END = 0xDC
FRAME_ESCAPED_ESCAPE = 0xDD

_UINT32_MASK = 0xFFFFFFFF

_ESCAPES = {
    FRAME_END: bytes((FRAME_ESCAPE, FRAME_ESCAPED_END)),
    FRAME_ESCAPE: bytes((FRAME_ESCAPE, FRAME_ESCAPED_ESCAPE)),
}


class FrameConsumeResult(enum.Enum):
    """Outcome of feeding one byte into a :class:`FrameReceiver`."""

    INCOMPLETE = enum.auto()
    FRAME_COMPLETE = enum.auto()
    FRAME_DISCARDED = enum.auto()


def encode_frame(payload: bytes) -> bytes:
    """Return ``payload`` escaped and wrapped in frame delimiters."""
    body = bytearray((FRAME_END,))
    for byte in payload:
        body += _ESCAPES.get(byte, bytes((byte,)))
    body.append(FRAME_END)
    return bytes(body)


class FrameReceiver:
    """Incremental deframer with a bounded payload buffer."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._buffer = bytearray()
        self._last_byte_ms = 0
        self._escape_pending = False
        self._discarding = False

    def reset(self) -> None:
        """Forget the current frame and return to the idle state."""
        self._buffer.clear()
        self._last_byte_ms = 0
        self._escape_pending = False
        self._discarding = False

    def reset_if_idle(self, now_ms: int, idle_timeout_ms: int) -> None:
        """Drop a partial frame that has been silent for ``idle_timeout_ms``."""
        if idle_timeout_ms == 0:
            return
        if not self._discarding and not self._escape_pending and not self._buffer:
            return
        if ((now_ms - self._last_byte_ms) & _UINT32_MASK) >= idle_timeout_ms:
            self.reset()

    def _append(self, byte: int) -> bool:
        if len(self._buffer) >= self._capacity:
            return False
        self._buffer.append(byte)
        return True

    def _start_discarding(self) -> None:
        self._buffer.clear()
        self._escape_pending = False
        self._discarding = True

    def _append_or_discard(self, byte: int) -> FrameConsumeResult:
        if not self._append(byte):
            self._start_discarding()
        return FrameConsumeResult.INCOMPLETE

    def consume_byte(self, byte: int, now_ms: int) -> FrameConsumeResult:
        """Feed one raw byte; report whether a frame completed or was dropped."""
        self._last_byte_ms = now_ms

        if self._discarding:
            if byte == FRAME_END:
                self.reset()
                return FrameConsumeResult.FRAME_DISCARDED
            return FrameConsumeResult.INCOMPLETE

        if self._escape_pending:
            self._escape_pending = False
            if byte == FRAME_ESCAPED_END:
                return self._append_or_discard(FRAME_END)
            if byte == FRAME_ESCAPED_ESCAPE:
                return self._append_or_discard(FRAME_ESCAPE)
            if byte == FRAME_END:
                self.reset()
                return FrameConsumeResult.FRAME_DISCARDED
            self._start_discarding()
            return FrameConsumeResult.INCOMPLETE

        if byte == FRAME_END:
            if not self._buffer:
                return FrameConsumeResult.INCOMPLETE
            return FrameConsumeResult.FRAME_COMPLETE

        if byte == FRAME_ESCAPE:
            self._escape_pending = True
            return FrameConsumeResult.INCOMPLETE

        return self._append_or_discard(byte)

    def frame(self) -> bytes:
        """Return the payload bytes assembled so far."""
        return bytes(self._buffer)


class FrameWriter:
    """Streaming writer that escapes payload bytes on their way to a sink."""

    def __init__(self, sink: ByteSink) -> None:
        self._sink = sink

    def _write_one(self, byte: int) -> bool:
        return self._sink.write(bytes((byte,))) == 1

    def _write_escaped(self, byte: int) -> bool:
        escaped = _ESCAPES.get(byte)
        if escaped is None:
            return self._write_one(byte)
        return all(self._write_one(part) for part in escaped)

    def begin_frame(self) -> bool:
        """Emit the opening delimiter; return True if the sink took it."""
        return self._write_one(FRAME_END)

    def end_frame(self) -> bool:
        """Emit the closing delimiter; return True if the sink took it."""
        return self._write_one(FRAME_END)

    def write(self, data: Union[int, bytes, bytearray, memoryview, None]) -> int:
        """Write payload bytes; return how many payload bytes were accepted."""
        if data is None:
            return 0
        if isinstance(data, int):
            if not 0 <= data <= 0xFF:
                raise ValueError(f"byte value out of range: {data}")
            return 1 if self._write_escaped(data) else 0

        payload = bytes(data)
        size = len(payload)
        written = 0
        while written < size:
            stop = written
            while stop < size and payload[stop] not in _ESCAPES:
                stop += 1
            if stop > written:
                chunk = self._sink.write(payload[written:stop])
                expected = stop - written
                written += chunk
                if chunk != expected or written == size:
                    break
            if not self._write_escaped(payload[written]):
                break
            written += 1
        return written