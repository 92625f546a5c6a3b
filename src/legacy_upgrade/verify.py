"""
Integrity checks for transferred files.

A transfer counts only once the device reports the same byte count as the
local file. The helper binary is additionally compared by SHA-256. Any
mismatch invalidates the whole transfer.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import TYPE_CHECKING

from legacy_upgrade.errors import VerificationError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.remote import commands

if TYPE_CHECKING:
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)


def file_sha256(file_path: Path, chunk_size: int = 65536) -> str:
    """
    Compute the SHA-256 of a local file.

    Args:
        file_path: File to hash.
        chunk_size: Read buffer size.

    Returns:
        64-character lowercase hex digest.
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def _parse_int(text: str) -> int | None:
    # wc on BusyBox pads with spaces; stat may print nothing on failure
    token = text.strip().split()[0] if text.strip() else ""
    return int(token) if token.isdigit() else None


class IntegrityVerifier:
    """Compares device-side files against their local source."""

    def __init__(self, remote: RemoteExecutor, *, timeout: float = 30.0) -> None:
        self._remote = remote
        self._timeout = timeout

    async def remote_size(self, remote_path: str) -> int | None:
        """Byte count of `remote_path`, or None if it cannot be read."""
        result = await self._remote.run(
            commands.file_size(remote_path), timeout=self._timeout
        )
        if not result.ok:
            return None
        return _parse_int(result.output)

    async def remote_sha256(self, remote_path: str) -> str | None:
        """SHA-256 of `remote_path`, or None when unavailable."""
        result = await self._remote.run(
            commands.sha256(remote_path), timeout=self._timeout
        )
        digest = result.output.lower()
        if not result.ok or len(digest) != 64:
            return None
        return digest

    async def verify_size(self, local_file: Path, remote_path: str) -> int:
        """
        Check that the device copy has the local byte count.

        Returns:
            The verified size.

        Raises:
            VerificationError: On mismatch or when the size is unreadable.
        """
        local_size = local_file.stat().st_size
        remote_size = await self.remote_size(remote_path)

        if remote_size != local_size:
            raise VerificationError(
                f"Size mismatch for {remote_path}: local={local_size}, remote={remote_size}",
                details={
                    "remote_path": remote_path,
                    "local_size": local_size,
                    "remote_size": remote_size,
                },
                remediation="Retransfer the file from scratch; partial files are never resumed",
            )

        logger.info(
            f"Transfer verified ({local_size} bytes)",
            extra={"remote_path": remote_path, "size": local_size},
        )
        return local_size

    async def verify_hash(self, expected_sha256: str, remote_path: str) -> None:
        """
        Check the SHA-256 of the device copy.

        Raises:
            VerificationError: On mismatch or when sha256sum is unavailable.
        """
        actual = await self.remote_sha256(remote_path)
        if actual != expected_sha256.lower():
            raise VerificationError(
                f"Hash mismatch for {remote_path}",
                details={
                    "remote_path": remote_path,
                    "expected": expected_sha256,
                    "actual": actual,
                },
                remediation="Retransfer the file from scratch with --hex",
            )
        logger.debug("Hash verified", extra={"remote_path": remote_path})
