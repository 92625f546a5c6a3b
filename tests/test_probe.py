"""
Tests for the capability probe.
"""

from __future__ import annotations

import pytest
from conftest import FakeDevice

from legacy_upgrade.errors import ConnectivityError
from legacy_upgrade.models import Capability
from legacy_upgrade.remote.probe import CapabilityProbe


class TestCapabilityProbe:
    """Tests for CapabilityProbe."""

    @pytest.mark.asyncio
    async def test_minimal_busybox(self, fake_device: FakeDevice) -> None:
        """Test a device without optional tools has no capabilities."""
        assert await CapabilityProbe(fake_device).probe("10.13.0.1") == frozenset()

    @pytest.mark.asyncio
    async def test_all_tools(self) -> None:
        """Test every tool maps to its capability."""
        device = FakeDevice(tools={"wget", "base64", "nc"})
        found = await CapabilityProbe(device).probe("10.13.0.1")

        assert found == {Capability.WGET, Capability.BASE64, Capability.NETCAT}

    @pytest.mark.asyncio
    async def test_netcat_alias(self) -> None:
        """Test `netcat` counts as well as `nc`."""
        found = await CapabilityProbe(FakeDevice(tools={"netcat"})).probe("10.13.0.1")
        assert found == {Capability.NETCAT}

    @pytest.mark.asyncio
    async def test_unreachable(self, fake_device: FakeDevice) -> None:
        """Test a failed echo raises with a manual login hint."""
        fake_device.fail_patterns.append(r"^echo ok$")

        with pytest.raises(ConnectivityError) as exc_info:
            await CapabilityProbe(fake_device).probe("10.13.0.1")

        assert "ssh -oHostKeyAlgorithms=+ssh-rsa root@10.13.0.1" in exc_info.value.remediation

    @pytest.mark.asyncio
    async def test_probe_does_not_modify_device(self) -> None:
        """Test the probe only runs read-only commands."""
        device = FakeDevice(tools={"wget"})
        await CapabilityProbe(device).probe("10.13.0.1")

        assert device.files == {}
        assert all(c == "echo ok" or c.startswith("which ") for c in device.log)
