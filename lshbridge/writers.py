"""Byte sinks that detect short writes and bounded in-memory buffers."""

from __future__ import annotations

from typing import Protocol, Union

BytesLike = Union[bytes, bytearray, memoryview]


class ByteSink(Protocol):
    """Anything that accepts bytes and reports how many it took."""

    def write(self, data: bytes) -> int:  # pragma: no cover - protocol
        ...


def _as_bytes(data: int | BytesLike) -> bytes:
    if isinstance(data, int):
        if not 0 <= data <= 0xFF:
            raise ValueError(f"byte value out of range: {data}")
        return bytes((data,))
    return bytes(data)


class CheckedWriter:
    """Forward writes to a sink and remember whether any write came up short.

    Callers serialize a whole payload through the writer once, then reject
    it if :meth:`failed` reports a truncated or invalid sub-write.
    """

    def __init__(self, sink: ByteSink) -> None:
        self._sink = sink
        self._failed = False

    def write(self, data: int | BytesLike | None) -> int:
        """Write one byte (an int) or a byte string; return the count accepted."""
        if data is None:
            self._failed = True
            return 0
        payload = _as_bytes(data)
        if not payload:
            return 0
        written = self._sink.write(payload)
        if written != len(payload):
            self._failed = True
        return written

    def failed(self) -> bool:
        """Return True if any earlier write failed or was truncated."""
        return self._failed


class FixedBufferWriter:
    """Accumulate bytes up to a fixed capacity without ever exceeding it.

    A write that does not fit is refused whole and latches :meth:`overflowed`,
    so the caller discards the payload instead of using a truncated prefix.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._buffer = bytearray()
        self._overflowed = False

    def write(self, data: int | BytesLike | None) -> int:
        """Append one byte (an int) or a byte string; return the count appended."""
        if data is None:
            self._overflowed = True
            return 0
        payload = _as_bytes(data)
        if not payload:
            return 0
        if len(payload) > self._capacity - len(self._buffer):
            self._overflowed = True
            return 0
        self._buffer += payload
        return len(payload)

    def data(self) -> bytes:
        """Return the bytes accumulated so far."""
        return bytes(self._buffer)

    def size(self) -> int:
        """Return the number of bytes accumulated so far."""
        return len(self._buffer)

    def overflowed(self) -> bool:
        """Return True if any write exceeded the remaining capacity."""
        return self._overflowed