"""Serial transport between the bridge and its controller.

The link reads newline-delimited JSON frames or byte-stuffed MsgPack frames,
classifies each decoded frame, and writes outbound commands in the codec
chosen at construction. Remote actuator commands are coalesced by the
attached :class:`~lshbridge.batch.ActuatorCommandBatch`.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any, Optional, Protocol

import msgpack
from msgpack.exceptions import UnpackException

from lshbridge.batch import ActuatorCommandBatch
from lshbridge.framing import FrameConsumeResult, FrameReceiver, FrameWriter
from lshbridge.messages import (
    CommandIds,
    DeserializeResult,
    DeviceDetails,
    MessageError,
    classify,
    decode_state,
    encode_click_json,
    encode_click_msgpack,
    encode_set_state_json,
    encode_set_state_msgpack,
    parse_device_details,
    validate_network_click,
)
from lshbridge.writers import CheckedWriter

_log = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
_NEWLINE = 0x0A
_FIRST_PRINTABLE = 0x20

RX_BUFFER_SIZE = 512
MAX_RX_BYTES_PER_LOOP = 1024
FRAME_IDLE_TIMEOUT_MS = 1000
PING_INTERVAL_MS = 2000
CONNECTION_TIMEOUT_MS = 5000
PROTOCOL_MAJOR = 1
MAX_NAME_LENGTH = 63
MAX_IDS = 255
ACTUATOR_COMMAND_SETTLE_MS = 50
ACTUATOR_COMMAND_MAX_PENDING_MS = 1000
ACTUATOR_COMMAND_MAX_MUTATIONS = 32

MessageCallback = Callable[[DeserializeResult, Any], None]


class _Serial(Protocol):
    def write(self, data: bytes) -> int: ...

    def read(self, size: int) -> bytes: ...


class _Device(Protocol):
    total_actuators: int

    def state_bits(self) -> Sequence[bool]: ...

    def actuator_index(self, actuator_id: int) -> Optional[int]: ...

    def apply_authoritative_state(self, states: Sequence[bool]) -> None: ...


class Codec(enum.Enum):
    """Wire format used on the controller link."""

    JSON = "json"
    MSGPACK = "msgpack"


def _monotonic_ms() -> int:
    return (time.monotonic_ns() // 1_000_000) & _UINT32_MASK


def _elapsed(now: int, since: int) -> int:
    return (now - since) & _UINT32_MASK


class ControllerSerialLink:
    """Frame, decode and send controller messages over a byte-oriented port.

    ``serial`` needs ``write(bytes) -> int`` and a non-blocking
    ``read(size) -> bytes`` that returns ``b""`` when nothing is waiting.
    ``device`` is the cached controller model. ``clock`` returns milliseconds.
    The limits below are plain attributes and may be adjusted after
    construction.
    """

    def __init__(
        self,
        serial: _Serial,
        device: _Device,
        commands: CommandIds,
        clock: Callable[[], int] = _monotonic_ms,
        codec: Codec = Codec.JSON,
    ) -> None:
        self._serial = serial
        self._device = device
        self._commands = commands
        self._clock = clock
        self._codec = codec

        self.rx_buffer_size = RX_BUFFER_SIZE
        self.max_rx_bytes_per_loop = MAX_RX_BYTES_PER_LOOP
        self.frame_idle_timeout_ms = FRAME_IDLE_TIMEOUT_MS
        self.ping_interval_ms = PING_INTERVAL_MS
        self.connection_timeout_ms = CONNECTION_TIMEOUT_MS
        self.protocol_major = PROTOCOL_MAJOR
        self.max_name_length = MAX_NAME_LENGTH
        self.max_ids = MAX_IDS

        self.batch = ActuatorCommandBatch(
            device,
            clock,
            ACTUATOR_COMMAND_SETTLE_MS,
            ACTUATOR_COMMAND_MAX_PENDING_MS,
            ACTUATOR_COMMAND_MAX_MUTATIONS,
        )

        self._callback: Optional[MessageCallback] = None
        self._received: Any = None
        self._last_sent_ms = 0
        self._last_received_ms = 0
        self._seen_traffic = False

        self._line = bytearray()
        self._discard_until_newline = False
        self._frames = FrameReceiver(self.rx_buffer_size)

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def received(self) -> Any:
        """The last successfully decoded controller document."""
        return self._received

    def on_message(self, callback: Optional[MessageCallback]) -> None:
        """Register the callback invoked with each classified frame and its document."""
        self._callback = callback

    # -- receiving -------------------------------------------------------

    def _incoming(self) -> Iterator[int]:
        for _ in range(self.max_rx_bytes_per_loop):
            chunk = self._serial.read(1)
            if not chunk:
                return
            yield chunk[0]

    def _deliver(self, doc: Any) -> DeserializeResult:
        self._received = doc
        self._seen_traffic = True
        self._last_received_ms = self._clock()
        result = classify(doc, self._commands)
        if self._callback is not None:
            self._callback(result, doc)
        return result

    def process_serial_buffer(self) -> Optional[DeserializeResult]:
        """Read pending bytes and handle at most one complete frame.

        Returns the classification of the delivered frame, or ``None`` when no
        frame was completed within this call's byte budget.
        """
        if self._codec is Codec.MSGPACK:
            return self._process_msgpack()
        return self._process_json()

    def _process_json(self) -> Optional[DeserializeResult]:
        for byte in self._incoming():
            if self._discard_until_newline:
                if byte == _NEWLINE:
                    self._discard_until_newline = False
                continue

            if byte == _NEWLINE:
                if not self._line:
                    continue
                line = bytes(self._line)
                self._line.clear()
                try:
                    doc = json.loads(line.decode("utf-8"))
                except ValueError as error:
                    _log.debug("Deserialization error %s on message %r", error, line)
                    continue
                return self._deliver(doc)

            if byte >= _FIRST_PRINTABLE:
                if len(self._line) < self.rx_buffer_size - 1:
                    self._line.append(byte)
                else:
                    # Drop the rest of the oversized line so its tail is not
                    # mistaken for a new command.
                    self._line.clear()
                    self._discard_until_newline = True
                    _log.debug("Serial line overflow, message discarded")
        return None

    def _process_msgpack(self) -> Optional[DeserializeResult]:
        now = self._clock()
        self._frames.reset_if_idle(now, self.frame_idle_timeout_ms)

        for byte in self._incoming():
            outcome = self._frames.consume_byte(byte, now)
            if outcome is FrameConsumeResult.FRAME_DISCARDED:
                _log.debug("Discarded malformed framed MsgPack payload")
                continue
            if outcome is not FrameConsumeResult.FRAME_COMPLETE:
                continue

            payload = self._frames.frame()
            self._frames.reset()
            try:
                doc = msgpack.unpackb(payload, raw=False)
            except (ValueError, TypeError, UnpackException) as error:
                _log.debug("MsgPack deserialization error: %s", error)
                return None
            return self._deliver(doc)
        return None

    # -- sending ---------------------------------------------------------

    def _can_ping(self) -> bool:
        return _elapsed(self._clock(), self._last_sent_ms) > self.ping_interval_ms

    def _sent(self, ok: bool) -> bool:
        if ok:
            self._last_sent_ms = self._clock()
        return ok

    def _write_checked(self, payload: bytes) -> bool:
        checked = CheckedWriter(self._serial)
        checked.write(payload)
        return not checked.failed()

    def _write_framed(self, payload: bytes) -> bool:
        framer = FrameWriter(self._serial)
        if not framer.begin_frame():
            return False
        checked = CheckedWriter(framer)
        checked.write(payload)
        ended = framer.end_frame()
        return not checked.failed() and ended

    def send_static(self, payload: bytes, is_ping: bool = False) -> bool:
        """Send pre-serialized bytes as they are; pings are throttled."""
        if is_ping and not self._can_ping():
            return False
        data = bytes(payload)
        if not data:
            return False
        return self._sent(self._serial.write(data) == len(data))

    def send_document(self, doc: Any) -> bool:
        """Serialize ``doc`` in the link codec and send it as one frame."""
        if self._codec is Codec.MSGPACK:
            packed = msgpack.packb(doc)
            if not packed:
                return False
            return self._sent(self._write_framed(packed))

        text = json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        checked = CheckedWriter(self._serial)
        written = checked.write(text)
        delimiter = checked.write(b"\n")
        return self._sent(written != 0 and delimiter == 1 and not checked.failed())

    def send_raw(self, buffer: bytes) -> bool:
        """Forward an already-serialized payload, adding the codec's framing."""
        data = bytes(buffer)
        if not data:
            return False
        if self._codec is Codec.MSGPACK:
            return self._sent(self._write_framed(data))
        written = self._serial.write(data)
        delimiter = self._serial.write(b"\n")
        return self._sent(written == len(data) and delimiter == 1)

    def send_set_state(self, bits: Iterable[bool], total_actuators: int) -> bool:
        """Send one packed ``SET_STATE`` command."""
        if self._codec is Codec.MSGPACK:
            payload = encode_set_state_msgpack(bits, total_actuators, self._commands)
            return self._sent(self._write_framed(payload))
        payload = encode_set_state_json(bits, total_actuators, self._commands)
        return self._sent(self._write_checked(payload))

    def send_click(self, command: int, click_type: int, clickable_id: int, correlation_id: int) -> bool:
        """Send one fixed-shape click command."""
        if self._codec is Codec.MSGPACK:
            payload = encode_click_msgpack(command, click_type, clickable_id, correlation_id)
            return self._sent(self._write_framed(payload))
        payload = encode_click_json(command, click_type, clickable_id, correlation_id)
        return self._sent(self._write_checked(payload))

    # -- interpreting received frames -------------------------------------

    def parse_details_from_received(self) -> DeviceDetails:
        """Validate the last frame as ``DEVICE_DETAILS``; raise MessageError if invalid."""
        return parse_device_details(self._received, self.protocol_major, self.max_name_length, self.max_ids)

    def store_state_from_received(self) -> None:
        """Validate the last frame as packed state and apply it to the device model."""
        states = decode_state(self._received, self._device.total_actuators)
        self._device.apply_authoritative_state(states)

    def trigger_failover_from_received_click(self, general_failover_payload: bytes) -> DeserializeResult:
        """Answer an unforwardable click with a specific or a general failover."""
        try:
            click = validate_network_click(self._received, self._commands)
        except MessageError:
            click = None

        if click is None or not click.is_request:
            _log.debug("Cannot create specific failover, sending general failover")
            if self.send_static(general_failover_payload):
                return DeserializeResult.ERR_NOT_CONNECTED_GENERAL_FAILOVER_SENT
            return DeserializeResult.ERR_NOT_FORWARDED_OTHER_PROBLEM

        if self.send_click(
            self._commands.failover_click,
            click.click_type,
            click.clickable_id,
            click.correlation_id,
        ):
            return DeserializeResult.ERR_NOT_CONNECTED_FAILOVER_SENT
        return DeserializeResult.ERR_NOT_FORWARDED_OTHER_PROBLEM

    def process_pending_actuator_batch(self) -> bool:
        """Send the coalesced actuator batch if it is due; return True if committed."""
        return self.batch.process(self.send_set_state)

    def is_connected(self) -> bool:
        """Return True if a valid frame arrived within the connection timeout."""
        return self._seen_traffic and _elapsed(self._clock(), self._last_received_ms) < self.connection_timeout_ms