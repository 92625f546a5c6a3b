"""
Firmware upgrade flow.

- state_machine: states, events, effects and the pure transition table
- orchestrator: runs the state machine against a device
- device: thin client for the safe-upgrade helper commands
"""

from legacy_upgrade.upgrade.orchestrator import (
    RunOptions,
    UpgradeOrchestrator,
    UpgradeReport,
    exit_code_for,
)
from legacy_upgrade.upgrade.state_machine import (
    Effect,
    UpgradeEvent,
    UpgradeState,
    transition,
)

__all__ = [
    "Effect",
    "RunOptions",
    "UpgradeEvent",
    "UpgradeOrchestrator",
    "UpgradeReport",
    "UpgradeState",
    "exit_code_for",
    "transition",
]
