"""
Tests for the multiplexed SSH channel.

paramiko.SSHClient is mocked; no connection is opened.
"""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from legacy_upgrade.config import SSHConfig
from legacy_upgrade.errors import AuthError, ConnectivityError
from legacy_upgrade.models import Device
from legacy_upgrade.remote.ssh import (
    SSH_CONNECTION_LOST,
    CommandResult,
    ConnectionMultiplexer,
)

SSH_CLIENT = "legacy_upgrade.remote.ssh.paramiko.SSHClient"


def _client(stdout: bytes = b"", stderr: bytes = b"", status: int = 0) -> MagicMock:
    """An SSHClient mock whose every exec_command returns the given output."""
    client = MagicMock()
    stdin_file = MagicMock()
    stdout_file = MagicMock()
    stdout_file.read.return_value = stdout
    stdout_file.channel.recv_exit_status.return_value = status
    stderr_file = MagicMock()
    stderr_file.read.return_value = stderr
    client.exec_command.return_value = (stdin_file, stdout_file, stderr_file)
    return client


@pytest.fixture
def device() -> Device:
    return Device(address="10.13.0.1", password="toorlibre1")


@pytest.fixture
def ssh_config() -> SSHConfig:
    return SSHConfig()


@pytest.fixture
def client() -> Iterator[MagicMock]:
    mock = _client(stdout=b"ok\n")
    with patch(SSH_CLIENT, return_value=mock) as client_cls:
        mock.client_cls = client_cls
        yield mock


class TestCommandResult:
    """Tests for CommandResult."""

    def test_output_is_decoded_and_stripped(self) -> None:
        """Test stdout/stderr decoding."""
        result = CommandResult(returncode=0, stdout=b" 1024\n", stderr=b"warn\n")

        assert result.ok
        assert result.output == "1024"
        assert result.error_output == "warn"

    def test_invalid_utf8_is_replaced(self) -> None:
        """Test undecodable bytes do not raise."""
        assert CommandResult(returncode=1, stdout=b"\xff").output == "\ufffd"


# =============================================================================
# Connect
# =============================================================================


class TestConnect:
    """Tests for the lazy connection."""

    @pytest.mark.asyncio
    async def test_connect_options(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test password login with legacy ssh-rsa negotiation."""
        await ConnectionMultiplexer(device, ssh_config).run("echo ok")

        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "10.13.0.1"
        assert kwargs["port"] == 22
        assert kwargs["username"] == "root"
        assert kwargs["password"] == "toorlibre1"
        assert kwargs["timeout"] == 10
        assert not kwargs["allow_agent"]
        assert not kwargs["look_for_keys"]
        assert kwargs["disabled_algorithms"] == {"pubkeys": ["rsa-sha2-512", "rsa-sha2-256"]}

    @pytest.mark.asyncio
    async def test_unknown_host_keys_accepted(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test reflashed devices with new host keys are accepted."""
        await ConnectionMultiplexer(device, ssh_config).run("echo ok")

        [policy] = client.set_missing_host_key_policy.call_args.args
        assert isinstance(policy, paramiko.AutoAddPolicy)

    @pytest.mark.asyncio
    async def test_keepalive(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test the transport keepalive follows the config."""
        await ConnectionMultiplexer(device, ssh_config).run("echo ok")

        client.get_transport.return_value.set_keepalive.assert_called_once_with(5)

    @pytest.mark.asyncio
    async def test_key_login_without_password(
        self, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test agent and key files are used when no password is set."""
        await ConnectionMultiplexer(Device(address="10.13.0.1"), ssh_config).run("echo ok")

        kwargs = client.connect.call_args.kwargs
        assert kwargs["password"] is None
        assert kwargs["allow_agent"]
        assert kwargs["look_for_keys"]

    @pytest.mark.asyncio
    async def test_connect_timeout_override(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test reboot polls can shorten the connect timeout."""
        await ConnectionMultiplexer(device, ssh_config, connect_timeout=3).run("echo ok")

        kwargs = client.connect.call_args.kwargs
        assert kwargs["timeout"] == 3
        assert kwargs["banner_timeout"] == 3

    @pytest.mark.asyncio
    async def test_one_connection_for_many_commands(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test commands share one connection."""
        remote = ConnectionMultiplexer(device, ssh_config)

        await remote.run("echo ok")
        await remote.run("which wget")

        assert client.client_cls.call_count == 1
        assert client.connect.call_count == 1
        assert client.exec_command.call_count == 2
        assert remote.connected

    @pytest.mark.asyncio
    async def test_rejected_password(self, device: Device, ssh_config: SSHConfig) -> None:
        """Test an authentication failure becomes AuthError."""
        mock = _client()
        mock.connect.side_effect = paramiko.AuthenticationException("denied")
        remote = ConnectionMultiplexer(device, ssh_config)

        with patch(SSH_CLIENT, return_value=mock), pytest.raises(AuthError) as exc_info:
            await remote.run("echo ok")

        assert "LEGACY_UPGRADE_DEVICE__PASSWORD" in exc_info.value.remediation
        assert not remote.connected

    @pytest.mark.asyncio
    async def test_unreachable(self, device: Device, ssh_config: SSHConfig) -> None:
        """Test a refused or timed out connect becomes ConnectivityError."""
        mock = _client()
        mock.connect.side_effect = OSError("No route to host")

        with (
            patch(SSH_CLIENT, return_value=mock),
            pytest.raises(ConnectivityError, match="Cannot connect"),
        ):
            await ConnectionMultiplexer(device, ssh_config).run("echo ok")

    @pytest.mark.asyncio
    async def test_handshake_failure(self, device: Device, ssh_config: SSHConfig) -> None:
        """Test a failed key exchange becomes ConnectivityError."""
        mock = _client()
        mock.connect.side_effect = paramiko.SSHException("Incompatible ssh server")

        with (
            patch(SSH_CLIENT, return_value=mock),
            pytest.raises(ConnectivityError) as exc_info,
        ):
            await ConnectionMultiplexer(device, ssh_config).run("echo ok")

        assert "ssh-rsa" in exc_info.value.remediation


# =============================================================================
# Run
# =============================================================================


class TestRun:
    """Tests for ConnectionMultiplexer.run."""

    @pytest.mark.asyncio
    async def test_run_returns_result(self, device: Device, ssh_config: SSHConfig) -> None:
        """Test stdout, stderr and the exit status are returned."""
        mock = _client(stdout=b"1024\n", stderr=b"warn", status=2)

        with patch(SSH_CLIENT, return_value=mock):
            result = await ConnectionMultiplexer(device, ssh_config).run("stat -c%s /tmp/x")

        assert result.returncode == 2
        assert result.output == "1024"
        assert result.error_output == "warn"
        assert mock.exec_command.call_args.args == ("stat -c%s /tmp/x",)

    @pytest.mark.asyncio
    async def test_step_timeout(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test the command timeout defaults to the config and can be overridden."""
        remote = ConnectionMultiplexer(device, ssh_config)

        await remote.run("echo ok")
        await remote.run("echo ok", timeout=5.0)

        timeouts = [c.kwargs["timeout"] for c in client.exec_command.call_args_list]
        assert timeouts == [60.0, 5.0]

    @pytest.mark.asyncio
    async def test_stdin_is_forwarded(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test stdin bytes are written and then closed."""
        await ConnectionMultiplexer(device, ssh_config).run("cat > /tmp/x", stdin=b"data")

        stdin_file, stdout_file, _ = client.exec_command.return_value
        stdin_file.write.assert_called_once_with(b"data")
        stdout_file.channel.shutdown_write.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_drops_connection(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test a stalled command raises and the next command reconnects."""
        _, stdout_file, _ = client.exec_command.return_value
        stdout_file.read.side_effect = [TimeoutError(), b"ok\n"]
        remote = ConnectionMultiplexer(device, ssh_config)

        with pytest.raises(ConnectivityError, match="timed out after 60.0s"):
            await remote.run("sleep 100")

        client.close.assert_called_once()
        assert not remote.connected

        assert (await remote.run("echo ok")).output == "ok"
        assert client.connect.call_count == 2

    @pytest.mark.asyncio
    async def test_lost_transport(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test a dropped transport becomes ConnectivityError."""
        client.exec_command.side_effect = paramiko.SSHException("SSH session not active")

        with pytest.raises(ConnectivityError, match="was lost"):
            await ConnectionMultiplexer(device, ssh_config).run("echo ok")

    @pytest.mark.asyncio
    async def test_connection_lost_is_returned(
        self, device: Device, ssh_config: SSHConfig
    ) -> None:
        """Test a channel closed without exit status reports 255 instead of raising."""
        mock = _client(status=-1)

        with patch(SSH_CLIENT, return_value=mock):
            result = await ConnectionMultiplexer(device, ssh_config).run("safe-upgrade upgrade")

        assert result.returncode == SSH_CONNECTION_LOST
        assert not result.ok


# =============================================================================
# Close
# =============================================================================


class TestClose:
    """Tests for tearing the connection down."""

    @pytest.mark.asyncio
    async def test_close_without_connection_is_noop(
        self, device: Device, ssh_config: SSHConfig
    ) -> None:
        """Test nothing is created when no command ever ran."""
        with patch(SSH_CLIENT) as client_cls:
            await ConnectionMultiplexer(device, ssh_config).close()

        client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_closes_client(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test close shuts the client once and a second close is harmless."""
        remote = ConnectionMultiplexer(device, ssh_config)
        await remote.run("echo ok")

        await remote.close()
        await remote.close()

        client.close.assert_called_once()
        assert not remote.connected

    @pytest.mark.asyncio
    async def test_context_manager_closes(
        self, device: Device, ssh_config: SSHConfig, client: MagicMock
    ) -> None:
        """Test leaving `async with` closes the connection."""
        async with ConnectionMultiplexer(device, ssh_config) as remote:
            await remote.run("echo ok")

        client.close.assert_called_once()
