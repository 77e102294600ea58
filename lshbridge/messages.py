"""Controller wire-protocol messages: packed actuator state, device details and clicks.

Documents are decoded JSON or MsgPack mappings. Validation failures raise
:class:`MessageError`, which carries the matching :class:`DeserializeResult`.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from itertools import islice
from typing import Any, Optional

KEY_PAYLOAD = "p"
KEY_STATE = "s"
KEY_TYPE = "t"
KEY_ID = "i"
KEY_CORRELATION_ID = "c"
KEY_PROTOCOL_MAJOR = "v"
KEY_NAME = "n"
KEY_ACTUATORS_ARRAY = "a"
KEY_BUTTONS_ARRAY = "b"

_MSGPACK_FIXMAP_2 = 0x82
_MSGPACK_FIXMAP_4 = 0x84
_MSGPACK_FIXSTR_1 = 0xA1
_MSGPACK_UINT8 = 0xCC
_MSGPACK_FIXARRAY = 0x90
_MSGPACK_ARRAY16 = 0xDC


class DeserializeResult(enum.Enum):
    """Classification of a received controller frame or of a failed check."""

    OK_DETAILS = enum.auto()
    OK_STATE = enum.auto()
    OK_NETWORK_CLICK_REQUEST = enum.auto()
    OK_NETWORK_CLICK_CONFIRM = enum.auto()
    OK_BOOT = enum.auto()
    OK_PING = enum.auto()
    OK_OTHER_PAYLOAD = enum.auto()
    ERR_MISSING_KEY_PAYLOAD = enum.auto()
    ERR_UNKNOWN_PAYLOAD = enum.auto()
    ERR_MISSING_KEY_PROTOCOL_MAJOR = enum.auto()
    ERR_PROTOCOL_MAJOR_MISMATCH = enum.auto()
    ERR_NO_NAME = enum.auto()
    ERR_NAME_TOO_LONG = enum.auto()
    ERR_MISSING_KEY_ACTUATORS_IDS = enum.auto()
    ERR_MISSING_KEY_BUTTONS_IDS = enum.auto()
    ERR_ACTUATOR_ID_IMPLAUSIBLE = enum.auto()
    ERR_BUTTON_ID_IMPLAUSIBLE = enum.auto()
    ERR_MISSING_KEY_STATE = enum.auto()
    ERR_ACTUATORS_MISMATCH = enum.auto()
    ERR_STATE_VALUE_IMPLAUSIBLE = enum.auto()
    ERR_NO_CLICK_TYPE = enum.auto()
    ERR_UNKNOWN_CLICK_TYPE = enum.auto()
    ERR_LONG_CLICKED_BUTTON_IMPLAUSIBLE = enum.auto()
    ERR_CLICK_CORRELATION_ID_IMPLAUSIBLE = enum.auto()
    ERR_NOT_CONNECTED_FAILOVER_SENT = enum.auto()
    ERR_NOT_CONNECTED_GENERAL_FAILOVER_SENT = enum.auto()
    ERR_NOT_FORWARDED_OTHER_PROBLEM = enum.auto()


class MessageError(ValueError):
    """A controller message failed validation."""

    def __init__(self, result: DeserializeResult, message: str = "") -> None:
        super().__init__(message or result.name)
        self.result = result


@dataclass(frozen=True)
class CommandIds:
    """Numeric command and click-type identifiers of the wire protocol."""

    device_details: int
    actuators_state: int
    set_state: int
    network_click_request: int
    network_click_confirm: int
    failover_click: int
    boot: int
    ping: int
    long_click_type: int
    super_long_click_type: int


@dataclass(frozen=True)
class DeviceDetails:
    """Validated controller topology."""

    name: str
    actuator_ids: tuple[int, ...]
    button_ids: tuple[int, ...]


@dataclass(frozen=True)
class ClickPayload:
    """Validated network click request or confirmation."""

    result: DeserializeResult
    click_type: int
    clickable_id: int
    correlation_id: int

    @property
    def is_request(self) -> bool:
        return self.result is DeserializeResult.OK_NETWORK_CLICK_REQUEST


def is_uint8(value: Any) -> bool:
    """Return True if ``value`` is an integer scalar in ``[0, 255]``."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 0xFF


def _check_total(total_actuators: int) -> None:
    if not is_uint8(total_actuators):
        raise ValueError(f"actuator count out of range: {total_actuators!r}")


def _check_uint8_args(**values: int) -> None:
    for name, value in values.items():
        if not is_uint8(value):
            raise ValueError(f"{name} must be a uint8, got {value!r}")


def packed_byte_count(total_actuators: int) -> int:
    """Return how many bytes hold the packed state of ``total_actuators``."""
    _check_total(total_actuators)
    return (total_actuators + 7) // 8


def tail_mask(total_actuators: int) -> int:
    """Return the bits allowed to be set in the last packed state byte."""
    _check_total(total_actuators)
    live_tail_bits = total_actuators & 0x07
    if live_tail_bits == 0:
        return 0xFF
    return (1 << live_tail_bits) - 1


def pack_state(bits: Iterable[bool], total_actuators: int) -> bytes:
    """Pack actuator states, actuator 0 in bit 0 of byte 0; missing bits are off."""
    packed = bytearray(packed_byte_count(total_actuators))
    for index, bit in enumerate(islice(bits, total_actuators)):
        if bit:
            packed[index // 8] |= 1 << (index % 8)
    return bytes(packed)


def _unpack(values: Sequence[Any], total_actuators: int) -> list[bool]:
    expected = packed_byte_count(total_actuators)
    if len(values) != expected:
        raise MessageError(
            DeserializeResult.ERR_ACTUATORS_MISMATCH,
            f"expected {expected} packed bytes, got {len(values)}",
        )
    last_index = expected - 1
    forbidden_tail = ~tail_mask(total_actuators) & 0xFF
    for byte_index, value in enumerate(values):
        if not is_uint8(value):
            raise MessageError(DeserializeResult.ERR_STATE_VALUE_IMPLAUSIBLE, f"invalid packed byte {value!r}")
        if byte_index == last_index and value & forbidden_tail:
            raise MessageError(DeserializeResult.ERR_STATE_VALUE_IMPLAUSIBLE, "padding bits set in last packed byte")
    return [bool((values[index // 8] >> (index % 8)) & 1) for index in range(total_actuators)]


def unpack_state(packed_bytes: Iterable[int], total_actuators: int) -> list[bool]:
    """Decode packed state bytes into one bool per actuator."""
    return _unpack(list(packed_bytes), total_actuators)


def _field(doc: Any, key: str) -> Any:
    if isinstance(doc, Mapping):
        return doc.get(key)
    return None


def _array(value: Any) -> Optional[list[Any]]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return list(value)
    return None


def _unique_positive_ids(values: list[Any], max_ids: int, error: DeserializeResult) -> tuple[int, ...]:
    if len(values) > max_ids:
        raise MessageError(error, f"too many ids: {len(values)} > {max_ids}")
    seen: set[int] = set()
    for value in values:
        if not is_uint8(value) or value == 0 or value in seen:
            raise MessageError(error, f"invalid or duplicate id {value!r}")
        seen.add(value)
    return tuple(values)


def parse_device_details(doc: Any, protocol_major: int, max_name_length: int, max_ids: int) -> DeviceDetails:
    """Validate a ``DEVICE_DETAILS`` document and return its topology."""
    major = _field(doc, KEY_PROTOCOL_MAJOR)
    if not is_uint8(major):
        raise MessageError(DeserializeResult.ERR_MISSING_KEY_PROTOCOL_MAJOR)
    if major != protocol_major:
        raise MessageError(
            DeserializeResult.ERR_PROTOCOL_MAJOR_MISMATCH,
            f"protocol major {major}, expected {protocol_major}",
        )

    name = _field(doc, KEY_NAME)
    if not isinstance(name, str) or not name:
        raise MessageError(DeserializeResult.ERR_NO_NAME)
    if len(name.encode("utf-8")) > max_name_length:
        raise MessageError(DeserializeResult.ERR_NAME_TOO_LONG)

    actuators = _array(_field(doc, KEY_ACTUATORS_ARRAY))
    if actuators is None:
        raise MessageError(DeserializeResult.ERR_MISSING_KEY_ACTUATORS_IDS)
    buttons = _array(_field(doc, KEY_BUTTONS_ARRAY))
    if buttons is None:
        raise MessageError(DeserializeResult.ERR_MISSING_KEY_BUTTONS_IDS)

    actuator_ids = _unique_positive_ids(actuators, max_ids, DeserializeResult.ERR_ACTUATOR_ID_IMPLAUSIBLE)
    button_ids = _unique_positive_ids(buttons, max_ids, DeserializeResult.ERR_BUTTON_ID_IMPLAUSIBLE)
    return DeviceDetails(name=name, actuator_ids=actuator_ids, button_ids=button_ids)


def decode_state(doc: Any, total_actuators: int) -> list[bool]:
    """Validate an ``ACTUATORS_STATE`` document and return one bool per actuator."""
    packed = _array(_field(doc, KEY_STATE))
    if packed is None:
        raise MessageError(DeserializeResult.ERR_MISSING_KEY_STATE)
    return _unpack(packed, total_actuators)


def validate_network_click(doc: Any, commands: CommandIds) -> ClickPayload:
    """Validate a network click request or confirmation document."""
    raw_command = _field(doc, KEY_PAYLOAD)
    if not is_uint8(raw_command) or raw_command not in (
        commands.network_click_request,
        commands.network_click_confirm,
    ):
        raise MessageError(DeserializeResult.ERR_UNKNOWN_PAYLOAD)

    click_type = _field(doc, KEY_TYPE)
    if not is_uint8(click_type):
        raise MessageError(DeserializeResult.ERR_NO_CLICK_TYPE)
    if click_type not in (commands.long_click_type, commands.super_long_click_type):
        raise MessageError(DeserializeResult.ERR_UNKNOWN_CLICK_TYPE)

    clickable_id = _field(doc, KEY_ID)
    if not is_uint8(clickable_id) or clickable_id == 0:
        raise MessageError(DeserializeResult.ERR_LONG_CLICKED_BUTTON_IMPLAUSIBLE)

    correlation_id = _field(doc, KEY_CORRELATION_ID)
    if not is_uint8(correlation_id) or correlation_id == 0:
        raise MessageError(DeserializeResult.ERR_CLICK_CORRELATION_ID_IMPLAUSIBLE)

    result = (
        DeserializeResult.OK_NETWORK_CLICK_REQUEST
        if raw_command == commands.network_click_request
        else DeserializeResult.OK_NETWORK_CLICK_CONFIRM
    )
    return ClickPayload(result, click_type, clickable_id, correlation_id)


def classify(doc: Any, commands: CommandIds) -> DeserializeResult:
    """Identify what kind of frame ``doc`` is, without acting on it."""
    raw_command = _field(doc, KEY_PAYLOAD)
    if not is_uint8(raw_command):
        if raw_command is None:
            return DeserializeResult.ERR_MISSING_KEY_PAYLOAD
        return DeserializeResult.ERR_UNKNOWN_PAYLOAD

    if raw_command == commands.device_details:
        return DeserializeResult.OK_DETAILS
    if raw_command == commands.actuators_state:
        return DeserializeResult.OK_STATE
    if raw_command in (commands.network_click_request, commands.network_click_confirm):
        try:
            return validate_network_click(doc, commands).result
        except MessageError as error:
            return error.result
    if raw_command == commands.boot:
        return DeserializeResult.OK_BOOT
    if raw_command == commands.ping:
        return DeserializeResult.OK_PING
    return DeserializeResult.OK_OTHER_PAYLOAD


def _msgpack_uint8(value: int) -> bytes:
    if value <= 0x7F:
        return bytes((value,))
    return bytes((_MSGPACK_UINT8, value))


def _msgpack_array_prefix(count: int) -> bytes:
    if count <= 15:
        return bytes((_MSGPACK_FIXARRAY | count,))
    return bytes((_MSGPACK_ARRAY16, 0x00, count))


def _msgpack_key(key: str) -> bytes:
    return bytes((_MSGPACK_FIXSTR_1,)) + key.encode("ascii")


def encode_set_state_json(bits: Iterable[bool], total_actuators: int, commands: CommandIds) -> bytes:
    """Return the newline-terminated JSON ``SET_STATE`` line for ``bits``."""
    _check_uint8_args(set_state=commands.set_state)
    packed = pack_state(bits, total_actuators)
    values = ",".join(str(byte) for byte in packed)
    return f'{{"{KEY_PAYLOAD}":{commands.set_state},"{KEY_STATE}":[{values}]}}\n'.encode("ascii")


def encode_set_state_msgpack(bits: Iterable[bool], total_actuators: int, commands: CommandIds) -> bytes:
    """Return the canonical MsgPack ``SET_STATE`` payload (unframed) for ``bits``."""
    _check_uint8_args(set_state=commands.set_state)
    packed = pack_state(bits, total_actuators)
    payload = bytearray((_MSGPACK_FIXMAP_2,))
    payload += _msgpack_key(KEY_PAYLOAD)
    payload += _msgpack_uint8(commands.set_state)
    payload += _msgpack_key(KEY_STATE)
    payload += _msgpack_array_prefix(len(packed))
    for byte in packed:
        payload += _msgpack_uint8(byte)
    return bytes(payload)


def encode_click_json(command: int, click_type: int, clickable_id: int, correlation_id: int) -> bytes:
    """Return the newline-terminated JSON click command line."""
    _check_uint8_args(
        command=command,
        click_type=click_type,
        clickable_id=clickable_id,
        correlation_id=correlation_id,
    )
    return (
        f'{{"{KEY_PAYLOAD}":{command},"{KEY_TYPE}":{click_type},'
        f'"{KEY_ID}":{clickable_id},"{KEY_CORRELATION_ID}":{correlation_id}}}\n'
    ).encode("ascii")


def encode_click_msgpack(command: int, click_type: int, clickable_id: int, correlation_id: int) -> bytes:
    """Return the canonical MsgPack click command payload (unframed)."""
    _check_uint8_args(
        command=command,
        click_type=click_type,
        clickable_id=clickable_id,
        correlation_id=correlation_id,
    )
    payload = bytearray((_MSGPACK_FIXMAP_4,))
    for key, value in (
        (KEY_PAYLOAD, command),
        (KEY_TYPE, click_type),
        (KEY_ID, clickable_id),
        (KEY_CORRELATION_ID, correlation_id),
    ):
        payload += _msgpack_key(key)
        payload += _msgpack_uint8(value)
    return bytes(payload)