"""
Device configuration backup.

Archives the configuration trees on the device and streams the archive back
over the command channel into a timestamped cache directory. A failed
backup never stops the upgrade; it is only reported.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from legacy_upgrade.errors import BackupError, ConnectivityError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.remote import commands

if TYPE_CHECKING:
    from legacy_upgrade.config import BackupConfig, CacheConfig
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

BACKUP_FILENAME = "router_backup.tar.gz"


async def pull_config_backup(
    remote: RemoteExecutor,
    config: BackupConfig,
    cache: CacheConfig,
    *,
    now: datetime | None = None,
) -> Path:
    """
    Archive the device configuration and copy it to the cache.

    Args:
        remote: Command channel to the device.
        config: Backup settings.
        cache: Local cache layout.
        now: Timestamp for the backup directory.

    Returns:
        Path of the local archive.

    Raises:
        BackupError: If archiving or copying fails.
    """
    timestamp = (now or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
    archive = config.remote_archive

    try:
        result = await remote.run(
            commands.archive(config.remote_paths, archive), timeout=config.timeout
        )
        if not result.ok:
            raise BackupError(
                "Failed to create the backup archive on the device",
                details={"paths": config.remote_paths, "stderr": result.error_output[:200]},
            )

        try:
            result = await remote.run(commands.cat(archive), timeout=config.timeout)
        finally:
            await _remove_archive(remote, archive)
    except ConnectivityError as e:
        raise BackupError(
            f"Backup did not finish: {e.message}",
            details={"archive": archive, "timeout": config.timeout},
        ) from e

    if not result.ok or not result.stdout:
        raise BackupError(
            "Failed to read the backup archive",
            details={"archive": archive, "returncode": result.returncode},
        )

    try:
        backup_dir = cache.backups_dir / timestamp
        backup_dir.mkdir(parents=True, exist_ok=True)
        local_file = backup_dir / BACKUP_FILENAME
        local_file.write_bytes(result.stdout)
    except OSError as e:
        raise BackupError(
            f"Failed to save the backup locally: {e}",
            details={"directory": str(cache.backups_dir)},
        ) from e

    logger.info(
        f"Configuration backup saved to {local_file}",
        extra={"size": len(result.stdout), "path": str(local_file)},
    )
    return local_file


async def _remove_archive(remote: RemoteExecutor, archive: str) -> None:
    try:
        await remote.run(commands.remove(archive))
    except ConnectivityError as e:
        logger.warning(f"Could not remove {archive} from the device: {e.message}")
