# lshbridge

These are building blocks for a bridge between a home-automation controller
on a serial line and an MQTT broker. The package handles the protocol side.
You supply the serial port, the clock, the device model and the MQTT client.

## Modules

### `lshbridge.writers`

- `CheckedWriter` wraps any sink that has `write(bytes) -> int`. It remembers
  whether any write came up short, and `failed()` reports it.
- `FixedBufferWriter(capacity)` is a bounded in-memory buffer. A write that
  does not fit is refused whole and sets `overflowed()`.

### `lshbridge.framing`

SLIP-like framing for binary payloads: `END + escaped(payload) + END`.

- `encode_frame(payload)` returns the framed bytes.
- `FrameReceiver(capacity)` deframes one byte at a time.
  - `consume_byte(byte, now_ms)` returns a `FrameConsumeResult`.
  - `frame()` returns the assembled payload.
  - `reset_if_idle(now_ms, idle_timeout_ms)` drops a stalled partial frame.
- `FrameWriter(sink)` escapes payload bytes on their way to a sink. It has
  `begin_frame()`, `write(...)` and `end_frame()`.

### `lshbridge.messages`

Validation and encoding of controller documents (decoded JSON or MsgPack
mappings).

- Validation:
  - `parse_device_details` returns `DeviceDetails`.
  - `decode_state` and `unpack_state` return one bool per actuator.
  - `validate_network_click` returns `ClickPayload`.
  - `classify` returns a `DeserializeResult`.
- A failed check raises `MessageError`. Its `.result` attribute holds the
  matching `DeserializeResult`.
- Packed state helpers: `pack_state`, `packed_byte_count`, `tail_mask` and
  `is_uint8`. Actuator 0 goes in bit 0 of byte 0. Padding bits in the last
  byte must be zero.
- Outbound commands, as exact bytes:
  - `encode_set_state_json` and `encode_set_state_msgpack`;
  - `encode_click_json` and `encode_click_msgpack`.
- Numeric command and click-type identifiers come from a `CommandIds` that
  you build.

### `lshbridge.batch`

`ActuatorCommandBatch` merges remote actuator commands into one outbound
`SET_STATE`. It is thread-safe.

- **Staging:** commands come in through `stage_single(actuator_id, state)`,
  which raises `KeyError` for an unknown ID, or `stage_packed(packed_bytes)`.
- **Sending:** `process(send)` sends the desired states once the settle
  window has passed.
- **Storm protection:**
  - A batch that stays open too long, or changes too many times, is dropped.
  - The drop is recorded as a `StormDiagnostic`.
  - Use `peek_storm_diagnostic()` and `clear_storm_diagnostic()` to read and
    reset it.
- **Reconciling:** `reconcile()` lines up pending intent with a fresh
  authoritative state. `clear()` throws pending intent away.
- **Rejected Homie commands:** saturating counters, keyed by
  `HomieRejectReason`.
  - `record_rejected_homie` adds one.
  - `snapshot_rejected_homie` reads them.
  - `consume_rejected_homie` subtracts counts that have been reported.
  - `clear_rejected_homie` resets them.

### `lshbridge.link`

`ControllerSerialLink(serial, device, commands, clock, codec)` is the serial
transport, in `Codec.JSON` or `Codec.MSGPACK`.

- **Receiving:** `process_serial_buffer()` handles at most one complete frame
  per call, within a byte budget. It returns the frame's classification and
  calls the callback set with `on_message`.
- **Sending:**
  - `send_static(payload, is_ping)`; pings are throttled;
  - `send_document`;
  - `send_raw`;
  - `send_set_state`;
  - `send_click`.
- **Reading the last frame:**
  - `parse_details_from_received()`;
  - `store_state_from_received()`;
  - `trigger_failover_from_received_click(general_failover_payload)`.
- **Batch and liveness:**
  - `process_pending_actuator_batch()` runs the attached `batch`.
  - `is_connected()` reports liveness from the last valid frame.
- Limits such as `rx_buffer_size`, `ping_interval_ms` and
  `connection_timeout_ms` are plain attributes.

### `lshbridge.sync`

Bootstrap phases (`BootstrapPhase`) and the main-loop flags
(`RuntimeHotState`), with these transitions:

- `enter_waiting_for_details`
- `enter_waiting_for_state`
- `stage_topology_migration`
- `request_authoritative_state_refresh`
- `refresh_controller_connectivity`
- `clear_pending_runtime_state`
- `schedule_bootstrap_request_now`

`bootstrap_phase_name` gives each phase its stable name.

### `lshbridge.publisher`

`MqttPublisher(client, max_size, use_msgpack)` publishes through any client
that has `publish(topic, qos, retain, payload) -> packet_id`. A packet id of
`0` means the publish was refused.

- `send_raw` publishes bytes as they are.
- `send_document` serializes a document as compact JSON or MsgPack. It
  refuses a payload larger than `max_size`.
- `send_static` publishes a pre-serialized payload, unretained, at QoS 1.

## Examples

Framing a MsgPack payload and reading it back:

```python
from lshbridge.framing import FrameReceiver, FrameConsumeResult, encode_frame

wire = encode_frame(b"\x81\xa1p\x01")
receiver = FrameReceiver(capacity=256)
for byte in wire:
    if receiver.consume_byte(byte, now_ms=0) is FrameConsumeResult.FRAME_COMPLETE:
        payload = receiver.frame()
        receiver.reset()
```

Packing actuator state and encoding a `SET_STATE` line:

```python
from lshbridge.messages import CommandIds, pack_state, encode_set_state_json

commands = CommandIds(
    device_details=1, actuators_state=2, set_state=12,
    network_click_request=3, network_click_confirm=4, failover_click=5,
    boot=6, ping=7, long_click_type=1, super_long_click_type=2,
)
pack_state([True, False, True], 3)                          # b"\x05"
encode_set_state_json([True, False, True], 3, commands)     # b'{"p":12,"s":[5]}\n'
```

Naming a bootstrap phase:

```python
from lshbridge.sync import BootstrapPhase, bootstrap_phase_name

bootstrap_phase_name(BootstrapPhase.SYNCED)   # "synced"
```

## What this package does not do

It has no main loop, no command-line program, no serial-port driver and no
MQTT client of its own. It does not build the device's MQTT topic names, and
you pass every topic in yourself.

It does not assemble bridge diagnostic events or ping replies. The batch
holds the storm diagnostic and the rejected-command counters, but
publishing them is left to you.

A staged topology is kept in `RuntimeHotState.pending_topology_details`. It
is not saved anywhere.

## Running the tests

```
pip install ".[test]"
pytest
```