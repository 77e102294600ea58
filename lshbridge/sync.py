"""Bridge/controller synchronization phases and their transitions."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from lshbridge.messages import DeviceDetails


class _Batch(Protocol):
    def clear(self) -> None: ...


class _Link(Protocol):
    batch: _Batch


class _Device(Protocol):
    def invalidate_runtime_model(self) -> None: ...

    def is_runtime_synchronized(self) -> bool: ...


class BootstrapPhase(enum.Enum):
    """High-level controller synchronization stage of the bridge."""

    WAITING_FOR_DETAILS = enum.auto()
    WAITING_FOR_STATE = enum.auto()
    SYNCED = enum.auto()
    TOPOLOGY_MIGRATION_PENDING_REBOOT = enum.auto()


_PHASE_NAMES = {
    BootstrapPhase.WAITING_FOR_DETAILS: "waiting_details",
    BootstrapPhase.WAITING_FOR_STATE: "waiting_state",
    BootstrapPhase.SYNCED: "synced",
    BootstrapPhase.TOPOLOGY_MIGRATION_PENDING_REBOOT: "topology_migration_pending_reboot",
}


@dataclass
class RuntimeHotState:
    """Runtime flags and timestamps touched repeatedly by the main loop."""

    bootstrap_phase: BootstrapPhase = BootstrapPhase.WAITING_FOR_DETAILS
    bootstrap_request_due: bool = True
    has_pending_topology_save: bool = False
    is_authoritative_state_dirty: bool = False
    can_serve_cached_state_requests: bool = False
    is_controller_connected: bool = False
    last_bootstrap_request_ms: int = 0
    last_topology_save_attempt_ms: int = 0
    last_authoritative_state_update_ms: int = 0
    pending_topology_details: Optional[DeviceDetails] = None


def clear_pending_runtime_state(link: _Link, state: RuntimeHotState) -> None:
    """Drop pending actuator writes and session-local state-serving flags."""
    link.batch.clear()
    state.is_authoritative_state_dirty = False
    state.can_serve_cached_state_requests = False


def schedule_bootstrap_request_now(state: RuntimeHotState) -> None:
    """Let the next loop iteration send a bootstrap request immediately."""
    state.bootstrap_request_due = True
    state.last_bootstrap_request_ms = 0


def _enter_phase(link: _Link, device: _Device, state: RuntimeHotState, phase: BootstrapPhase) -> None:
    clear_pending_runtime_state(link, state)
    device.invalidate_runtime_model()
    state.bootstrap_phase = phase
    schedule_bootstrap_request_now(state)


def enter_waiting_for_details(link: _Link, device: _Device, state: RuntimeHotState) -> None:
    """Wait for an authoritative ``DEVICE_DETAILS`` snapshot."""
    _enter_phase(link, device, state, BootstrapPhase.WAITING_FOR_DETAILS)


def enter_waiting_for_state(link: _Link, device: _Device, state: RuntimeHotState) -> None:
    """Wait for one fresh authoritative ``STATE`` frame."""
    _enter_phase(link, device, state, BootstrapPhase.WAITING_FOR_STATE)


def stage_topology_migration(link: _Link, device: _Device, state: RuntimeHotState, details: Any) -> None:
    """Stage a validated new topology that must be saved before a reboot."""
    clear_pending_runtime_state(link, state)
    device.invalidate_runtime_model()
    state.pending_topology_details = details
    state.has_pending_topology_save = True
    state.last_topology_save_attempt_ms = 0
    state.bootstrap_phase = BootstrapPhase.TOPOLOGY_MIGRATION_PENDING_REBOOT


def request_authoritative_state_refresh(link: _Link, device: _Device, state: RuntimeHotState) -> None:
    """Mark the runtime model stale and ask for one authoritative state."""
    enter_waiting_for_state(link, device, state)


def refresh_controller_connectivity(
    is_connected_now: bool, link: _Link, device: _Device, state: RuntimeHotState
) -> None:
    """React to a change in controller-link connectivity."""
    if is_connected_now == state.is_controller_connected:
        return

    state.is_controller_connected = is_connected_now
    if not is_connected_now:
        clear_pending_runtime_state(link, state)
        device.invalidate_runtime_model()
        if state.bootstrap_phase not in (
            BootstrapPhase.WAITING_FOR_DETAILS,
            BootstrapPhase.TOPOLOGY_MIGRATION_PENDING_REBOOT,
        ):
            state.bootstrap_phase = BootstrapPhase.WAITING_FOR_STATE
            schedule_bootstrap_request_now(state)
        return

    if state.bootstrap_phase is BootstrapPhase.WAITING_FOR_DETAILS:
        schedule_bootstrap_request_now(state)
        return

    if state.bootstrap_phase is BootstrapPhase.TOPOLOGY_MIGRATION_PENDING_REBOOT:
        return

    if not device.is_runtime_synchronized():
        request_authoritative_state_refresh(link, device, state)


def bootstrap_phase_name(phase: BootstrapPhase) -> str:
    """Return the stable name of a bootstrap phase."""
    return _PHASE_NAMES.get(phase, "waiting_details")