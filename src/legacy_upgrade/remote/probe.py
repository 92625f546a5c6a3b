"""
Capability probe for the device shell.

Runs once per run, before anything on the device is modified. The result
only orders and filters transfer strategies.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from legacy_upgrade.errors import ConnectivityError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.models import Capability
from legacy_upgrade.remote import commands

if TYPE_CHECKING:
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

# Binaries checked for each capability, any one of which is enough
_CAPABILITY_TOOLS: dict[Capability, tuple[str, ...]] = {
    Capability.WGET: ("wget",),
    Capability.BASE64: ("base64",),
    Capability.NETCAT: ("nc", "netcat"),
}


class CapabilityProbe:
    """Detects which transfer-relevant utilities the device shell offers."""

    def __init__(self, remote: RemoteExecutor, *, timeout: float = 15.0) -> None:
        self._remote = remote
        self._timeout = timeout

    async def check_reachable(self, address: str) -> None:
        """
        Confirm the command channel works.

        Raises:
            ConnectivityError: If the device does not answer.
            AuthError: If the device rejects the credentials.
        """
        result = await self._remote.run(commands.ECHO_PROBE, timeout=self._timeout)
        if not result.ok or result.output != "ok":
            raise ConnectivityError(
                f"Cannot establish SSH connection to {address}",
                details={
                    "address": address,
                    "returncode": result.returncode,
                    "stderr": result.error_output[:200],
                },
                remediation=(
                    f"Try a manual login: ssh -oHostKeyAlgorithms=+ssh-rsa root@{address} "
                    "(or connect to the device WiFi directly)"
                ),
            )

    async def probe(self, address: str) -> frozenset[Capability]:
        """
        Check reachability, then look for each tool.

        Args:
            address: Device address, used in messages.

        Returns:
            The set of capabilities present on the device.
        """
        await self.check_reachable(address)

        found: set[Capability] = set()
        for capability, tools in _CAPABILITY_TOOLS.items():
            result = await self._remote.run(
                commands.has_tool(*tools), timeout=self._timeout
            )
            if result.ok:
                found.add(capability)

        logger.info(
            "Device capabilities: "
            + (", ".join(sorted(c.value for c in found)) or "none (BusyBox minimal)"),
            extra={"address": address, "capabilities": sorted(c.value for c in found)},
        )
        return frozenset(found)
