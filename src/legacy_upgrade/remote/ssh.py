"""
Multiplexed SSH channel to the device.

One paramiko SSHClient is connected lazily by the first command and its
Transport carries every following command as a separate channel, so the
handshake with a slow embedded CPU is paid once per run. The connection is
torn down explicitly by `close()`, which `async with` guarantees on every
exit path.

paramiko is blocking; each call runs in a worker thread so the event loop
keeps serving the pull server and signal handlers meanwhile.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import paramiko

from legacy_upgrade.errors import AuthError, ConnectivityError
from legacy_upgrade.logging import get_logger

if TYPE_CHECKING:
    from legacy_upgrade.config import SSHConfig
    from legacy_upgrade.models import Device

logger = get_logger(__name__)

# Reported when the channel closes without an exit status, which is what a
# rebooting device looks like from this side.
SSH_CONNECTION_LOST = 255


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Decoded, stripped stdout."""
        return self.stdout.decode("utf-8", errors="replace").strip()

    @property
    def error_output(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


class RemoteExecutor(Protocol):
    """Anything that can run a shell fragment on the device."""

    async def run(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...

    async def close(self) -> None: ...


class ConnectionMultiplexer:
    """
    Runs device commands over one shared SSH connection.

    Attributes:
        device: Target device and credentials.
        config: SSH settings.
        connect_timeout: TCP and banner timeout for the first connect.

    Example:
        >>> async with ConnectionMultiplexer(device, config.ssh) as remote:
        ...     result = await remote.run("echo ok")
    """

    def __init__(
        self,
        device: Device,
        config: SSHConfig,
        *,
        connect_timeout: int | None = None,
    ) -> None:
        """
        Initialize the multiplexer.

        Args:
            device: Target device and credentials.
            config: SSH settings.
            connect_timeout: Override of config.connect_timeout (used for
                short reboot polls).
        """
        self.device = device
        self.config = config
        self.connect_timeout = connect_timeout or config.connect_timeout
        self._client: paramiko.SSHClient | None = None

    @property
    def target(self) -> str:
        return f"{self.device.username}@{self.device.address}"

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Devices regenerate host keys on every reflash
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=self.device.address,
            port=self.config.port,
            username=self.device.username,
            password=self.device.password,
            timeout=self.connect_timeout,
            banner_timeout=self.connect_timeout,
            auth_timeout=self.connect_timeout,
            allow_agent=self.device.password is None,
            look_for_keys=self.device.password is None,
            disabled_algorithms=self.config.disabled_algorithms or None,
        )
        transport = client.get_transport()
        if transport is not None and self.config.keepalive_interval:
            transport.set_keepalive(self.config.keepalive_interval)
        logger.debug("SSH connection established", extra={"device": self.device.address})
        return client

    def _execute(
        self,
        client: paramiko.SSHClient,
        command: str,
        stdin: bytes | None,
        timeout: float,
    ) -> CommandResult:
        stdin_file, stdout_file, stderr_file = client.exec_command(command, timeout=timeout)
        channel = stdout_file.channel
        if stdin is not None:
            stdin_file.write(stdin)
            stdin_file.flush()
        channel.shutdown_write()

        stdout = stdout_file.read()
        stderr = stderr_file.read()
        returncode = channel.recv_exit_status()
        if returncode < 0:
            returncode = SSH_CONNECTION_LOST
        return CommandResult(returncode=returncode, stdout=stdout, stderr=stderr)

    async def _ensure_connected(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client

        try:
            self._client = await asyncio.to_thread(self._connect)
        except paramiko.AuthenticationException as e:
            raise AuthError(
                f"Device {self.device.address} rejected the credentials",
                details={"device": self.device.address, "user": self.device.username},
                remediation=(
                    "Set the right password with LEGACY_UPGRADE_DEVICE__PASSWORD "
                    f"or try it manually: ssh -oHostKeyAlgorithms=+ssh-rsa {self.target}"
                ),
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(
                f"Cannot connect to {self.device.address}: {e}",
                details={"device": self.device.address, "port": self.config.port},
                remediation=f"Try a manual login: ssh -oHostKeyAlgorithms=+ssh-rsa {self.target}",
            ) from e
        return self._client

    async def run(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Run a shell fragment on the device.

        Args:
            command: Shell fragment for the device shell.
            stdin: Optional bytes fed to the command's stdin.
            timeout: Step timeout; defaults to config.command_timeout.

        Returns:
            CommandResult with raw stdout/stderr.

        Raises:
            ConnectivityError: If the device is unreachable or the command
                times out.
            AuthError: If the device rejects the credentials.
        """
        timeout = timeout if timeout is not None else self.config.command_timeout
        client = await self._ensure_connected()

        logger.debug(
            "Remote command",
            extra={"device": self.device.address, "command": command[:200]},
        )

        try:
            return await asyncio.to_thread(self._execute, client, command, stdin, timeout)
        except TimeoutError as e:
            # The channel may still be draining; start over on the next command
            await self.close()
            raise ConnectivityError(
                f"Remote command timed out after {timeout}s",
                details={"device": self.device.address, "command": command[:200]},
                remediation=f"Check the link to the device: ping {self.device.address}",
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            await self.close()
            raise ConnectivityError(
                f"SSH connection to {self.device.address} was lost: {e}",
                details={"device": self.device.address, "command": command[:200]},
                remediation=f"Check the link to the device: ping {self.device.address}",
            ) from e

    async def close(self) -> None:
        """Close the connection; the next command reconnects."""
        client, self._client = self._client, None
        if client is None:
            return
        await asyncio.to_thread(client.close)
        logger.debug("SSH connection closed", extra={"device": self.device.address})

    async def __aenter__(self) -> ConnectionMultiplexer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
