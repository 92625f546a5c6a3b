"""
Upgrade state machine.

The whole device flow is a fixed table from (state, event) to the next
state. Entering a state names the effect the orchestrator must perform; the
effect reports back with the next event. `transition` is pure, so the flow
can be tested without a device.

State transitions:
- idle -> probe_connectivity (start)
- probe_connectivity -> check_helper_version (probe_ok)
- check_helper_version -> up_to_date (helper_current)
- check_helper_version -> transfer_helper (helper_outdated)
- transfer_helper -> install_helper (transfer_ok)
- transfer_helper -> transfer_helper (strategy_failed, next strategy)
- install_helper -> up_to_date (installed)
- up_to_date -> verify_firmware_file (firmware_supplied)
- up_to_date -> done (no_firmware)
- verify_firmware_file -> backup_config (file_ok)
- backup_config -> transfer_firmware (backup_finished)
- transfer_firmware -> verify_firmware_on_device (transfer_ok)
- transfer_firmware -> transfer_firmware (strategy_failed, next strategy)
- verify_firmware_on_device -> execute_upgrade (device_verified)
- execute_upgrade -> await_reboot (upgrade_issued)
- await_reboot -> verify_new_firmware (device_back)
- await_reboot -> reboot_unverified (reboot_timeout)
- verify_new_firmware -> await_confirmation (firmware_running)
- await_confirmation -> confirmed | confirmation_pending | timed_out_revert
- transfer_* -> failed (strategies_exhausted)
- transfer_firmware, verify_firmware_on_device, execute_upgrade -> cancelled
- any non-terminal state -> failed (fatal)
"""

from __future__ import annotations

from enum import Enum

from legacy_upgrade.errors import InvalidTransitionError


class UpgradeState(str, Enum):
    """States of one upgrade run."""

    IDLE = "idle"
    PROBE_CONNECTIVITY = "probe_connectivity"
    CHECK_HELPER_VERSION = "check_helper_version"
    UP_TO_DATE = "up_to_date"
    TRANSFER_HELPER = "transfer_helper"
    INSTALL_HELPER = "install_helper"
    VERIFY_FIRMWARE_FILE = "verify_firmware_file"
    BACKUP_CONFIG = "backup_config"
    TRANSFER_FIRMWARE = "transfer_firmware"
    VERIFY_FIRMWARE_ON_DEVICE = "verify_firmware_on_device"
    EXECUTE_UPGRADE = "execute_upgrade"
    AWAIT_REBOOT = "await_reboot"
    VERIFY_NEW_FIRMWARE = "verify_new_firmware"
    AWAIT_CONFIRMATION = "await_confirmation"
    # Terminal
    DONE = "done"
    CONFIRMED = "confirmed"
    CONFIRMATION_PENDING = "confirmation_pending"
    TIMED_OUT_REVERT = "timed_out_revert"
    REBOOT_UNVERIFIED = "reboot_unverified"
    CANCELLED = "cancelled"
    FAILED = "failed"


class UpgradeEvent(str, Enum):
    """Outcomes reported by effects."""

    START = "start"
    PROBE_OK = "probe_ok"
    HELPER_CURRENT = "helper_current"
    HELPER_OUTDATED = "helper_outdated"
    TRANSFER_OK = "transfer_ok"
    STRATEGY_FAILED = "strategy_failed"
    STRATEGIES_EXHAUSTED = "strategies_exhausted"
    INSTALLED = "installed"
    FIRMWARE_SUPPLIED = "firmware_supplied"
    NO_FIRMWARE = "no_firmware"
    FILE_OK = "file_ok"
    BACKUP_FINISHED = "backup_finished"
    DEVICE_VERIFIED = "device_verified"
    UPGRADE_ISSUED = "upgrade_issued"
    DEVICE_BACK = "device_back"
    REBOOT_TIMEOUT = "reboot_timeout"
    FIRMWARE_RUNNING = "firmware_running"
    CONFIRM = "confirm"
    HANDED_OFF = "handed_off"
    CONFIRM_TIMEOUT = "confirm_timeout"
    CANCEL = "cancel"
    FATAL = "fatal"


class Effect(str, Enum):
    """Work the orchestrator performs on entering a state."""

    NONE = "none"
    PROBE = "probe"
    CHECK_HELPER = "check_helper"
    TRANSFER_HELPER = "transfer_helper"
    INSTALL_HELPER = "install_helper"
    SELECT_FIRMWARE_STEP = "select_firmware_step"
    CHECK_FIRMWARE_FILE = "check_firmware_file"
    BACKUP_CONFIG = "backup_config"
    TRANSFER_FIRMWARE = "transfer_firmware"
    VERIFY_ON_DEVICE = "verify_on_device"
    EXECUTE_UPGRADE = "execute_upgrade"
    WAIT_FOR_REBOOT = "wait_for_reboot"
    READ_NEW_FIRMWARE = "read_new_firmware"
    AWAIT_CONFIRMATION = "await_confirmation"


TERMINAL_STATES: frozenset[UpgradeState] = frozenset(
    {
        UpgradeState.DONE,
        UpgradeState.CONFIRMED,
        UpgradeState.CONFIRMATION_PENDING,
        UpgradeState.TIMED_OUT_REVERT,
        UpgradeState.REBOOT_UNVERIFIED,
        UpgradeState.CANCELLED,
        UpgradeState.FAILED,
    }
)

# States that hold an operator prompt before the upgrade is issued
CANCELLABLE_STATES: frozenset[UpgradeState] = frozenset(
    {
        UpgradeState.TRANSFER_FIRMWARE,
        UpgradeState.VERIFY_FIRMWARE_ON_DEVICE,
        UpgradeState.EXECUTE_UPGRADE,
    }
)

_S = UpgradeState
_E = UpgradeEvent

_TRANSITIONS: dict[tuple[UpgradeState, UpgradeEvent], UpgradeState] = {
    (_S.IDLE, _E.START): _S.PROBE_CONNECTIVITY,
    (_S.PROBE_CONNECTIVITY, _E.PROBE_OK): _S.CHECK_HELPER_VERSION,
    (_S.CHECK_HELPER_VERSION, _E.HELPER_CURRENT): _S.UP_TO_DATE,
    (_S.CHECK_HELPER_VERSION, _E.HELPER_OUTDATED): _S.TRANSFER_HELPER,
    (_S.TRANSFER_HELPER, _E.TRANSFER_OK): _S.INSTALL_HELPER,
    (_S.TRANSFER_HELPER, _E.STRATEGY_FAILED): _S.TRANSFER_HELPER,
    (_S.TRANSFER_HELPER, _E.STRATEGIES_EXHAUSTED): _S.FAILED,
    (_S.INSTALL_HELPER, _E.INSTALLED): _S.UP_TO_DATE,
    (_S.UP_TO_DATE, _E.FIRMWARE_SUPPLIED): _S.VERIFY_FIRMWARE_FILE,
    (_S.UP_TO_DATE, _E.NO_FIRMWARE): _S.DONE,
    (_S.VERIFY_FIRMWARE_FILE, _E.FILE_OK): _S.BACKUP_CONFIG,
    (_S.BACKUP_CONFIG, _E.BACKUP_FINISHED): _S.TRANSFER_FIRMWARE,
    (_S.TRANSFER_FIRMWARE, _E.TRANSFER_OK): _S.VERIFY_FIRMWARE_ON_DEVICE,
    (_S.TRANSFER_FIRMWARE, _E.STRATEGY_FAILED): _S.TRANSFER_FIRMWARE,
    (_S.TRANSFER_FIRMWARE, _E.STRATEGIES_EXHAUSTED): _S.FAILED,
    (_S.VERIFY_FIRMWARE_ON_DEVICE, _E.DEVICE_VERIFIED): _S.EXECUTE_UPGRADE,
    (_S.EXECUTE_UPGRADE, _E.UPGRADE_ISSUED): _S.AWAIT_REBOOT,
    (_S.AWAIT_REBOOT, _E.DEVICE_BACK): _S.VERIFY_NEW_FIRMWARE,
    (_S.AWAIT_REBOOT, _E.REBOOT_TIMEOUT): _S.REBOOT_UNVERIFIED,
    (_S.VERIFY_NEW_FIRMWARE, _E.FIRMWARE_RUNNING): _S.AWAIT_CONFIRMATION,
    (_S.AWAIT_CONFIRMATION, _E.CONFIRM): _S.CONFIRMED,
    (_S.AWAIT_CONFIRMATION, _E.HANDED_OFF): _S.CONFIRMATION_PENDING,
    (_S.AWAIT_CONFIRMATION, _E.CONFIRM_TIMEOUT): _S.TIMED_OUT_REVERT,
}
_TRANSITIONS.update({(state, _E.CANCEL): _S.CANCELLED for state in CANCELLABLE_STATES})
_TRANSITIONS.update(
    {(state, _E.FATAL): _S.FAILED for state in UpgradeState if state not in TERMINAL_STATES}
)

_ENTRY_EFFECTS: dict[UpgradeState, Effect] = {
    _S.PROBE_CONNECTIVITY: Effect.PROBE,
    _S.CHECK_HELPER_VERSION: Effect.CHECK_HELPER,
    _S.TRANSFER_HELPER: Effect.TRANSFER_HELPER,
    _S.INSTALL_HELPER: Effect.INSTALL_HELPER,
    _S.UP_TO_DATE: Effect.SELECT_FIRMWARE_STEP,
    _S.VERIFY_FIRMWARE_FILE: Effect.CHECK_FIRMWARE_FILE,
    _S.BACKUP_CONFIG: Effect.BACKUP_CONFIG,
    _S.TRANSFER_FIRMWARE: Effect.TRANSFER_FIRMWARE,
    _S.VERIFY_FIRMWARE_ON_DEVICE: Effect.VERIFY_ON_DEVICE,
    _S.EXECUTE_UPGRADE: Effect.EXECUTE_UPGRADE,
    _S.AWAIT_REBOOT: Effect.WAIT_FOR_REBOOT,
    _S.VERIFY_NEW_FIRMWARE: Effect.READ_NEW_FIRMWARE,
    _S.AWAIT_CONFIRMATION: Effect.AWAIT_CONFIRMATION,
}


def is_terminal(state: UpgradeState) -> bool:
    return state in TERMINAL_STATES


def transition(
    state: UpgradeState, event: UpgradeEvent
) -> tuple[UpgradeState, Effect]:
    """
    Apply `event` in `state`.

    Args:
        state: Current state.
        event: Event reported by the last effect.

    Returns:
        The next state and the effect to perform on entering it
        (Effect.NONE for terminal states).

    Raises:
        InvalidTransitionError: If the table has no entry for the pair.
    """
    try:
        next_state = _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Invalid transition: {state.value} on {event.value}",
            details={"state": state.value, "event": event.value},
        ) from None
    return next_state, _ENTRY_EFFECTS.get(next_state, Effect.NONE)
