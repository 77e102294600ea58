"""Coalescing of remote actuator commands into one outbound ``SET_STATE`` batch.

The batch keeps a desired-state shadow separate from the device model, which
holds only the last controller-confirmed state. Commands are merged until a
quiet window elapses. A batch that keeps changing for too long, or too many
times, is dropped and reported as a storm diagnostic.
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Optional, Protocol

from lshbridge.messages import unpack_state

_UINT32_MASK = 0xFFFFFFFF
_UINT16_MASK = 0xFFFF
_COUNTER_MAX = 0xFFFF


class _DeviceModel(Protocol):
    total_actuators: int

    def state_bits(self) -> Sequence[bool]: ...

    def actuator_index(self, actuator_id: int) -> Optional[int]: ...


@dataclass(frozen=True)
class StormDiagnostic:
    """An unstable batch dropped by the safety valve."""

    pending_duration_ms: int
    mutation_count: int


class HomieRejectReason(enum.Enum):
    """Why a Homie ``/set`` command was consumed without being staged."""

    RUNTIME_DESYNCHRONIZED = enum.auto()
    INVALID_PAYLOAD = enum.auto()
    STAGE_FAILED = enum.auto()


def _to_mask(bits: Iterable[bool]) -> int:
    mask = 0
    for index, bit in enumerate(bits):
        if bit:
            mask |= 1 << index
    return mask


def _to_bits(mask: int, total: int) -> list[bool]:
    return [bool((mask >> index) & 1) for index in range(total)]


def _elapsed(now: int, since: int) -> int:
    return (now - since) & _UINT32_MASK


class ActuatorCommandBatch:
    """Thread-safe desired-state shadow with settle window and storm protection.

    ``device`` must expose ``total_actuators``, ``state_bits()`` returning the
    authoritative state in dense order, and ``actuator_index(actuator_id)``
    returning the dense index or ``None``. ``clock`` returns milliseconds.
    """

    def __init__(
        self,
        device: _DeviceModel,
        clock: Callable[[], int],
        settle_ms: int,
        max_pending_ms: int,
        max_mutations: int,
    ) -> None:
        self._device = device
        self._clock = clock
        self._settle_ms = settle_ms
        self._max_pending_ms = max_pending_ms
        self._max_mutations = max_mutations
        self._lock = threading.Lock()

        self._desired = 0
        self._dirty = 0
        self._pending = False
        self._first_update_ms = 0
        self._last_update_ms = 0
        self._mutation_count = 0
        self._revision = 0

        self._storm: Optional[StormDiagnostic] = None
        self._rejected = {reason: 0 for reason in HomieRejectReason}

    def _authoritative_mask(self) -> int:
        return _to_mask(self._device.state_bits())

    def _bump_revision(self) -> None:
        self._revision = (self._revision + 1) & _UINT16_MASK

    def _refresh(self, restart_settle: bool = False, new_mutation: bool = False) -> None:
        was_pending = self._pending
        self._pending = self._dirty != 0
        if not self._pending:
            self._first_update_ms = 0
            self._last_update_ms = 0
            self._mutation_count = 0
        elif not was_pending:
            now = self._clock()
            self._first_update_ms = now
            self._last_update_ms = now
            self._mutation_count = 1 if new_mutation else 0
        elif restart_settle:
            self._last_update_ms = self._clock()

        if self._pending and new_mutation and was_pending and self._mutation_count < self._max_mutations:
            self._mutation_count += 1

        if new_mutation:
            self._bump_revision()

    def _clear_locked(self) -> None:
        self._desired = self._authoritative_mask()
        self._dirty = 0
        self._refresh()
        self._bump_revision()

    def stage_single(self, actuator_id: int, state: bool) -> None:
        """Stage one actuator command; raise KeyError for an unknown actuator ID."""
        index = self._device.actuator_index(actuator_id)
        if index is None:
            raise KeyError(f"unknown actuator id {actuator_id}")
        bit = 1 << index
        authoritative = bool(self._device.state_bits()[index])

        with self._lock:
            if self._pending and self._dirty & bit and bool(self._desired & bit) == state:
                return
            if state:
                self._desired |= bit
            else:
                self._desired &= ~bit
            if state == authoritative:
                self._dirty &= ~bit
            else:
                self._dirty |= bit
            self._refresh(restart_settle=True, new_mutation=True)

    def stage_packed(self, packed_bytes: Iterable[int]) -> None:
        """Stage a full packed state snapshot; raise MessageError if it is invalid."""
        total = self._device.total_actuators
        states = unpack_state(packed_bytes, total)
        if total == 0:
            return
        snapshot = _to_mask(states)

        with self._lock:
            if self._pending and self._desired == snapshot:
                return
            self._desired = snapshot
            self._dirty = snapshot ^ self._authoritative_mask()
            self._refresh(restart_settle=True, new_mutation=True)

    def process(self, send: Callable[[list[bool], int], bool]) -> bool:
        """Send the batch once it is settled; return True if it was sent and committed.

        ``send`` receives the desired states and the actuator count and returns
        whether the transport accepted the frame. A refused frame keeps the
        batch pending for a retry.
        """
        total = self._device.total_actuators
        if total == 0:
            return False

        with self._lock:
            if not self._pending:
                return False

            now = self._clock()
            settled = _elapsed(now, self._last_update_ms) >= self._settle_ms
            window_exceeded = (
                self._first_update_ms != 0 and _elapsed(now, self._first_update_ms) >= self._max_pending_ms
            )
            budget_exceeded = self._mutation_count >= self._max_mutations
            if not (settled or window_exceeded or budget_exceeded):
                return False

            snapshot = self._desired
            if window_exceeded or budget_exceeded:
                self._storm = StormDiagnostic(
                    pending_duration_ms=_elapsed(now, self._first_update_ms),
                    mutation_count=self._mutation_count,
                )
                self._clear_locked()
                return False

            if snapshot == self._authoritative_mask():
                self._dirty = 0
                self._refresh()
                return False

            revision = self._revision

        if not send(_to_bits(snapshot, total), total):
            return False

        with self._lock:
            if not self._pending or self._revision != revision:
                return False
            self._dirty = 0
            self._refresh()
        return True

    def clear(self) -> None:
        """Drop pending intent and realign the shadow with the authoritative state."""
        with self._lock:
            self._clear_locked()

    def reconcile(self) -> None:
        """Reconcile pending intent against a fresh authoritative state."""
        authoritative = self._authoritative_mask()
        with self._lock:
            if self._pending:
                previous = self._desired
                self._dirty &= previous ^ authoritative
                self._desired = (previous & self._dirty) | (authoritative & ~self._dirty)
            else:
                self._desired = authoritative
                self._dirty = 0
            self._refresh()
            self._bump_revision()

    def peek_storm_diagnostic(self) -> Optional[StormDiagnostic]:
        """Return the last unreported storm diagnostic, if any, without clearing it."""
        with self._lock:
            return self._storm

    def clear_storm_diagnostic(self) -> None:
        """Forget the storm diagnostic once it has been reported."""
        with self._lock:
            self._storm = None

    def record_rejected_homie(self, reason: HomieRejectReason) -> None:
        """Count one rejected Homie command; counters saturate instead of wrapping."""
        with self._lock:
            if self._rejected[reason] < _COUNTER_MAX:
                self._rejected[reason] += 1

    def clear_rejected_homie(self) -> None:
        """Reset every rejected Homie counter."""
        with self._lock:
            for reason in self._rejected:
                self._rejected[reason] = 0

    def snapshot_rejected_homie(self) -> tuple[int, int, int]:
        """Return the (desync, invalid payload, stage failed) counters."""
        with self._lock:
            return (
                self._rejected[HomieRejectReason.RUNTIME_DESYNCHRONIZED],
                self._rejected[HomieRejectReason.INVALID_PAYLOAD],
                self._rejected[HomieRejectReason.STAGE_FAILED],
            )

    def consume_rejected_homie(self, desync: int, invalid_payload: int, stage_failed: int) -> None:
        """Subtract reported counts from the counters, never going below zero."""
        with self._lock:
            for reason, reported in (
                (HomieRejectReason.RUNTIME_DESYNCHRONIZED, desync),
                (HomieRejectReason.INVALID_PAYLOAD, invalid_payload),
                (HomieRejectReason.STAGE_FAILED, stage_failed),
            ):
                self._rejected[reason] = max(0, self._rejected[reason] - reported)