"""
safe-upgrade helper version management.

The helper on the device is compared against a pinned SHA-256 first. When it
matches, nothing is downloaded or transferred. Otherwise the latest helper
is fetched into the local cache and the decision is made against what was
actually downloaded.
"""

from __future__ import annotations

import hashlib
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from legacy_upgrade.errors import HelperInstallError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.models import HelperVersionState
from legacy_upgrade.remote import commands

if TYPE_CHECKING:
    from legacy_upgrade.config import CacheConfig, HelperConfig
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

HELPER_CACHE_NAME = "safe-upgrade"
NOT_BOOTSTRAPPED_MARKER = "not bootstrapped"
# Helpers from the 0.x series predate the features the upgrade relies on
OUTDATED_VERSION_MARKER = "version: 0."


class HelperManager:
    """
    Checks, downloads and installs the device-side safe-upgrade helper.

    Attributes:
        config: Helper settings (paths, URL, pinned hash).
        cache: Local cache layout.
    """

    def __init__(
        self,
        remote: RemoteExecutor,
        config: HelperConfig,
        cache: CacheConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            remote: Command channel to the device.
            config: Helper settings.
            cache: Local cache layout.
            transport: Optional httpx transport for the download (tests).
        """
        self._remote = remote
        self.config = config
        self.cache = cache
        self._transport = transport

    @property
    def cached_file(self) -> Path:
        return self.cache.path / HELPER_CACHE_NAME

    async def inspect(self) -> HelperVersionState:
        """Read what is installed on the device."""
        state = HelperVersionState(known_latest_hash=self.config.known_latest_hash)
        path = self.config.remote_path

        result = await self._remote.run(commands.is_executable(path))
        if not result.ok:
            logger.info("safe-upgrade is not installed", extra={"path": path})
            return state

        state.installed = True
        hash_result = await self._remote.run(commands.sha256(path))
        digest = hash_result.output.lower()
        if hash_result.ok and len(digest) == 64:
            state.installed_hash = digest

        version_result = await self._remote.run(commands.helper_version(path))
        state.installed_version = version_result.output or None

        logger.info(
            f"Installed safe-upgrade: {state.installed_version or 'unknown version'}",
            extra={"hash": state.installed_hash},
        )
        return state

    async def download(self) -> tuple[str, int]:
        """
        Fetch the latest helper into the cache.

        Returns:
            (sha256, size) of the downloaded file.

        Raises:
            HelperInstallError: If the download fails or is empty.
        """
        logger.info("Downloading latest safe-upgrade", extra={"url": self.config.download_url})
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.download_timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(self.config.download_url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise HelperInstallError(
                f"Failed to download safe-upgrade: {e}",
                details={"url": self.config.download_url},
                remediation=f"Download it manually into {self.cached_file}",
            ) from e

        content = response.content
        if not content:
            raise HelperInstallError(
                "Downloaded safe-upgrade is empty",
                details={"url": self.config.download_url},
                remediation="Check the download URL in helper.download_url",
            )

        self.cache.path.mkdir(parents=True, exist_ok=True)
        tmp_file = self.cached_file.with_suffix(".tmp")
        tmp_file.write_bytes(content)
        os.replace(tmp_file, self.cached_file)

        digest = hashlib.sha256(content).hexdigest()
        logger.info(
            f"Downloaded safe-upgrade ({len(content)} bytes)",
            extra={"sha256": digest, "path": str(self.cached_file)},
        )
        return digest, len(content)

    async def check(self) -> tuple[HelperVersionState, bool]:
        """
        Decide whether the helper needs installing.

        Returns:
            The helper state and whether an install is needed.

        Raises:
            HelperInstallError: If no helper is installed and the latest one
                cannot be downloaded.
        """
        state = await self.inspect()

        if state.is_current and not self.config.always_download:
            logger.info("safe-upgrade is up to date (pinned hash match)")
            return state, False

        try:
            digest, _size = await self.download()
        except HelperInstallError as e:
            if state.installed:
                logger.warning(
                    f"{e.message}; continuing with the installed helper",
                    extra={"installed_version": state.installed_version},
                )
                return state, False
            raise

        state.downloaded_hash = digest
        state.downloaded_file = self.cached_file

        if digest != state.known_latest_hash:
            logger.warning(
                "Upstream safe-upgrade differs from the pinned hash; "
                "update helper.known_latest_hash after reviewing it",
                extra={"downloaded": digest, "pinned": state.known_latest_hash},
            )

        if not state.installed:
            return state, True

        if state.installed_hash is not None:
            needs_update = state.installed_hash != digest
        else:
            version = state.installed_version or ""
            needs_update = not version or OUTDATED_VERSION_MARKER in version

        if needs_update:
            logger.info("safe-upgrade needs an update")
        else:
            logger.info("safe-upgrade is up to date")
        return state, needs_update

    async def install(self, state: HelperVersionState) -> HelperVersionState:
        """
        Move the staged helper into place and make sure it works.

        The staged copy must already be verified at `config.staging_path`.

        Raises:
            HelperInstallError: If any install step fails.
        """
        path = self.config.remote_path
        staging = self.config.staging_path
        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")

        steps = [
            (commands.backup_file(path, timestamp), "back up the existing helper"),
            (commands.install_file(staging, path), "install the helper"),
            (commands.is_executable(path), "make the helper executable"),
        ]
        for command, action in steps:
            result = await self._remote.run(command)
            if not result.ok:
                raise HelperInstallError(
                    f"Failed to {action}",
                    details={"path": path, "stderr": result.error_output[:200]},
                    remediation=(
                        f"Copy it with 'legacy-upgrade transfer' to {path}, "
                        "then chmod +x it"
                    ),
                )

        show = await self._remote.run(commands.helper_show(path))
        if not show.ok and NOT_BOOTSTRAPPED_MARKER not in show.output:
            raise HelperInstallError(
                "Installed safe-upgrade does not run",
                details={"path": path, "returncode": show.returncode},
                remediation=f"Run '{path} show' on the device to see the error",
            )

        if NOT_BOOTSTRAPPED_MARKER in show.output:
            boot = await self._remote.run(commands.helper_bootstrap(path))
            if not boot.ok:
                raise HelperInstallError(
                    "safe-upgrade bootstrap failed",
                    details={"stderr": boot.error_output[:200]},
                    remediation=f"Run '{path} bootstrap' on the device",
                )
        state.bootstrapped = True

        await self._remote.run(commands.remove(staging))

        state.installed = True
        state.installed_hash = state.downloaded_hash
        logger.info("safe-upgrade installed", extra={"path": path, "backup_suffix": timestamp})
        return state
