"""
Thin client for the safe-upgrade helper on the device.

Only invokes the helper; its own behaviour (partition switching, the
revert timer) lives on the device.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from legacy_upgrade.errors import ConnectivityError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.remote import commands
from legacy_upgrade.remote.ssh import SSH_CONNECTION_LOST

if TYPE_CHECKING:
    from legacy_upgrade.remote.ssh import CommandResult, RemoteExecutor

logger = get_logger(__name__)

_CURRENT_RE = re.compile(r"current partition\D*(\d+)", re.IGNORECASE)
_STABLE_RE = re.compile(r"stable partition\D*(\d+)", re.IGNORECASE)
_TESTING_RE = re.compile(r"testing partition\D*(\d+)", re.IGNORECASE)
_VERSION_RE = re.compile(r"version:?\s*(\S+)", re.IGNORECASE)


@dataclass
class HelperStatus:
    """Parsed output of `safe-upgrade show`."""

    raw: str
    version: str | None = None
    current_partition: int | None = None
    stable_partition: int | None = None
    testing_partition: int | None = None

    @property
    def bootstrapped(self) -> bool:
        return "not bootstrapped" not in self.raw.lower()


def parse_show(output: str) -> HelperStatus:
    """Extract what is recognisable from `safe-upgrade show`."""

    def _int(pattern: re.Pattern[str]) -> int | None:
        match = pattern.search(output)
        return int(match.group(1)) if match else None

    version = _VERSION_RE.search(output)
    return HelperStatus(
        raw=output,
        version=version.group(1) if version else None,
        current_partition=_int(_CURRENT_RE),
        stable_partition=_int(_STABLE_RE),
        testing_partition=_int(_TESTING_RE),
    )


def parse_remaining(output: str) -> int | None:
    """Seconds from `confirm-remaining`, or None when not a number."""
    text = output.strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return None


class UpgradeCommandOutcome(str, Enum):
    """How the upgrade command ended, as far as this side can tell."""

    EXITED = "exited"
    CONNECTION_DROPPED = "connection_dropped"
    TIMED_OUT = "timed_out"


class SafeUpgradeClient:
    """Runs safe-upgrade subcommands on the device."""

    def __init__(
        self,
        remote: RemoteExecutor,
        helper_path: str,
        *,
        timeout: float = 60.0,
    ) -> None:
        self._remote = remote
        self.helper_path = helper_path
        self.timeout = timeout

    async def show(self) -> CommandResult:
        return await self._remote.run(commands.helper_show(self.helper_path))

    async def status(self) -> HelperStatus | None:
        """Parsed `show` output, or None when the helper fails to run."""
        result = await self.show()
        if not result.ok:
            return None
        return parse_show(result.output)

    async def bootstrap(self) -> CommandResult:
        logger.info("Bootstrapping safe-upgrade")
        return await self._remote.run(
            commands.helper_bootstrap(self.helper_path), timeout=self.timeout
        )

    async def ensure_bootstrapped(self) -> bool:
        """Bootstrap when `show` fails or reports so; True if ready."""
        result = await self.show()
        if result.ok and "not bootstrapped" not in result.output.lower():
            return True
        return (await self.bootstrap()).ok

    async def verify(self, firmware_path: str) -> CommandResult:
        """Let the helper validate the image before writing it."""
        return await self._remote.run(
            commands.helper_verify(self.helper_path, firmware_path),
            timeout=self.timeout,
        )

    async def upgrade(
        self,
        firmware_path: str,
        safety_timeout: int,
        *,
        force: bool = False,
    ) -> tuple[UpgradeCommandOutcome, CommandResult | None]:
        """
        Issue the upgrade; the device reboots when it succeeds.

        Returns:
            The outcome and the command result (None on timeout).
        """
        command = commands.helper_upgrade(
            self.helper_path, firmware_path, safety_timeout, force=force
        )
        try:
            result = await self._remote.run(command, timeout=self.timeout)
        except ConnectivityError:
            # A reboot that outlives the command timeout looks like this
            return UpgradeCommandOutcome.TIMED_OUT, None

        if result.returncode == SSH_CONNECTION_LOST:
            return UpgradeCommandOutcome.CONNECTION_DROPPED, result
        return UpgradeCommandOutcome.EXITED, result

    async def confirm_remaining(self) -> int | None:
        result = await self._remote.run(
            commands.helper_confirm_remaining(self.helper_path)
        )
        if not result.ok:
            return None
        return parse_remaining(result.output)

    async def confirm(self) -> CommandResult:
        logger.info("Confirming the new firmware")
        return await self._remote.run(commands.helper_confirm(self.helper_path))
