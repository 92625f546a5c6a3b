"""
Remote command channel to the device.

- ConnectionMultiplexer: one reused SSH master connection per device
- CapabilityProbe: which utilities the device shell provides
- commands: the POSIX-minimal shell fragments run on the device
"""

from legacy_upgrade.remote.probe import CapabilityProbe
from legacy_upgrade.remote.ssh import (
    CommandResult,
    ConnectionMultiplexer,
    RemoteExecutor,
)

__all__ = [
    "CapabilityProbe",
    "CommandResult",
    "ConnectionMultiplexer",
    "RemoteExecutor",
]
