"""
Configuration management for the legacy router upgrade tool.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (~/.config/legacy-upgrade/config.yml or --config path)
3. Environment variables (LEGACY_UPGRADE_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("~/.config/legacy-upgrade/config.yml")
DEFAULT_ENV_PREFIX = "LEGACY_UPGRADE_"

# =============================================================================
# Device Configuration
# =============================================================================


class DeviceConfig(BaseModel):
    """Target device settings.

    Attributes:
        address: Device IP address or hostname; auto-detected when unset.
        username: Login user for SSH and the web interface.
        password: Login password; prompted for when unset.
        candidate_addresses: Addresses tried by auto-detection, in order.
    """

    address: str | None = Field(
        default=None,
        description="Device IP address or hostname",
    )
    username: str = Field(
        default="root",
        description="Login user for SSH and HTTP",
    )
    password: str | None = Field(
        default=None,
        description="Login password (prompted for when unset)",
    )
    candidate_addresses: list[str] = Field(
        default_factory=lambda: ["thisnode.info", "10.13.0.1", "192.168.1.1"],
        description="Addresses tried when no address is given",
    )


# =============================================================================
# SSH Configuration
# =============================================================================


class SSHConfig(BaseModel):
    """Remote command channel settings.

    Attributes:
        port: SSH port on the device.
        connect_timeout: TCP, banner and auth timeout in seconds.
        command_timeout: Default timeout for one remote command.
        keepalive_interval: Transport keepalive in seconds; 0 disables it.
        disabled_algorithms: paramiko algorithms to skip so legacy firmware
            negotiates ssh-rsa.
    """

    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    connect_timeout: int = Field(
        default=10,
        ge=1,
        le=120,
        description="Connect timeout in seconds",
    )
    command_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Default timeout for a remote command in seconds",
    )
    keepalive_interval: int = Field(
        default=5,
        ge=0,
        description="Keepalive interval for the SSH transport (0 disables)",
    )
    disabled_algorithms: dict[str, list[str]] = Field(
        default_factory=lambda: {"pubkeys": ["rsa-sha2-512", "rsa-sha2-256"]},
        description="Algorithms paramiko must not offer (old dropbear only knows ssh-rsa)",
    )


# =============================================================================
# HTTP Authentication Configuration
# =============================================================================


class AuthConfig(BaseModel):
    """Device web authentication settings.

    Attributes:
        rpc_endpoint: JSON-RPC endpoint used for session login.
        cookie_login_endpoint: Web login endpoint used as fallback.
        session_timeout: Token lifetime requested from the device (seconds).
        request_timeout: Timeout for one login request.
    """

    rpc_endpoint: str = Field(default="/ubus", description="JSON-RPC endpoint")
    cookie_login_endpoint: str = Field(
        default="/cgi-bin/luci",
        description="Cookie-based web login endpoint",
    )
    session_timeout: int = Field(
        default=5000,
        ge=1,
        description="Session lifetime requested in the login call",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for login requests",
    )


# =============================================================================
# Transfer Configuration
# =============================================================================


class TransferConfig(BaseModel):
    """Transfer strategy chain settings.

    Attributes:
        chunk_size: Bytes per chunk for the chunked text strategy.
        chunk_batch_size: Chunks concatenated into one remote command.
        whole_file_max_bytes: Largest file sent with whole-file encoding.
        http_push_enabled: Whether HTTP push is a candidate at all.
        upload_endpoint: Multipart upload endpoint on the device.
        upload_path: The only device path the upload ACL allows writing.
        upload_timeout: HTTP timeout for one upload.
        http_pull_port: Preferred port for the transient HTTP server.
        advertise_host: Address the device should fetch from; discovered
            when unset.
        batch_timeout: Timeout for one remote chunk batch.
        download_timeout: Timeout for the device-side wget.
    """

    chunk_size: int = Field(
        default=512,
        ge=16,
        le=4096,
        description="Bytes per chunk for chunked text transfer",
    )
    chunk_batch_size: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Chunks per remote command",
    )
    whole_file_max_bytes: int = Field(
        default=32768,
        ge=0,
        description="Largest file sent in one whole-file text command",
    )
    http_push_enabled: bool = Field(
        default=True,
        description="Try the HTTP push strategy first",
    )
    upload_endpoint: str = Field(
        default="/cgi-bin/cgi-upload",
        description="Multipart upload endpoint",
    )
    upload_path: str = Field(
        default="/tmp/firmware.bin",
        description="Destination permitted by the device upload ACL",
    )
    upload_timeout: float = Field(
        default=600.0,
        gt=0,
        description="HTTP timeout for one upload",
    )
    http_pull_port: int = Field(
        default=8765,
        ge=0,
        le=65535,
        description="Preferred port for the transient HTTP server (0 = any)",
    )
    advertise_host: str | None = Field(
        default=None,
        description="Operator address reachable from the device",
    )
    batch_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for one chunk batch",
    )
    download_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for the device-side wget",
    )


# =============================================================================
# Helper (safe-upgrade) Configuration
# =============================================================================


class HelperConfig(BaseModel):
    """safe-upgrade helper settings.

    Attributes:
        remote_path: Install location of the helper on the device.
        staging_path: Where the helper is transferred before install.
        download_url: Upstream location of the latest helper.
        known_latest_hash: Pinned SHA-256 of the latest helper.
        always_download: Re-verify against a fresh download even when the
            installed hash matches the pinned one.
        download_timeout: Timeout for the helper download.
    """

    remote_path: str = Field(
        default="/usr/sbin/safe-upgrade",
        description="Helper install path on the device",
    )
    staging_path: str = Field(
        default="/tmp/safe-upgrade.new",
        description="Helper staging path on the device",
    )
    download_url: str = Field(
        default=(
            "https://raw.githubusercontent.com/libremesh/lime-packages/"
            "refs/heads/master/packages/safe-upgrade/files/usr/sbin/safe-upgrade"
        ),
        description="Upstream URL of the latest helper",
    )
    known_latest_hash: str = Field(
        default="18e5c0bba3119366101a6f246201f4c3e220c96712a122fa05a7e25cad2c7cbd",
        description="Pinned SHA-256 of the latest helper (update by hand)",
    )
    always_download: bool = Field(
        default=False,
        description="Always re-verify with a fresh download",
    )
    download_timeout: float = Field(
        default=60.0,
        gt=0,
        description="HTTP timeout for the helper download",
    )

    @field_validator("known_latest_hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        """Validate and normalize the pinned hash."""
        v_lower = v.strip().lower()
        if len(v_lower) != 64 or any(c not in "0123456789abcdef" for c in v_lower):
            raise ValueError(f"Invalid SHA-256 hash: {v}")
        return v_lower


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Firmware upgrade and safe-upgrade session settings.

    Attributes:
        firmware_path: Device path the firmware is written to.
        confirm_window_seconds: Reboot safety timeout passed to safe-upgrade.
        command_timeout: Timeout for verify/upgrade commands.
        reboot_initial_wait: Seconds to wait before the first reboot poll.
        reboot_poll_interval: Seconds between reboot polls.
        reboot_max_wait: Polling ceiling in seconds.
        reboot_probe_timeout: Per-attempt connect timeout while polling.
        confirm_poll_interval: Seconds between confirmation polls.
        wait_for_confirmation: Block until confirmed or reverted.
        min_firmware_bytes: Smaller firmware files trigger a warning.
        max_firmware_bytes: Larger firmware files trigger a warning.
        slow_transfer_prompt_bytes: Ask before chunked transfer above this.
    """

    firmware_path: str = Field(
        default="/tmp/firmware.bin",
        description="Device path for the firmware image",
    )
    confirm_window_seconds: int = Field(
        default=1200,
        ge=60,
        le=86400,
        description="Safe-upgrade confirmation window in seconds",
    )
    command_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for helper verify/upgrade commands",
    )
    reboot_initial_wait: float = Field(
        default=30.0,
        ge=0,
        description="Seconds to wait before polling for the reboot",
    )
    reboot_poll_interval: float = Field(
        default=15.0,
        gt=0,
        description="Seconds between reboot polls",
    )
    reboot_max_wait: float = Field(
        default=300.0,
        gt=0,
        description="Reboot polling ceiling in seconds",
    )
    reboot_probe_timeout: int = Field(
        default=5,
        ge=3,
        le=10,
        description="Per-attempt timeout while polling for the reboot",
    )
    confirm_poll_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between confirmation polls",
    )
    wait_for_confirmation: bool = Field(
        default=False,
        description="Block until the upgrade is confirmed or reverted",
    )
    min_firmware_bytes: int = Field(
        default=1_000_000,
        ge=0,
        description="Warn when the firmware is smaller than this",
    )
    max_firmware_bytes: int = Field(
        default=20_000_000,
        ge=0,
        description="Warn when the firmware is larger than this",
    )
    slow_transfer_prompt_bytes: int = Field(
        default=1_000_000,
        ge=0,
        description="Ask before chunked transfer of firmware above this size",
    )


# =============================================================================
# Backup and Cache Configuration
# =============================================================================


class BackupConfig(BaseModel):
    """Device configuration backup settings.

    Attributes:
        enabled: Pull a configuration backup before the firmware transfer.
        remote_paths: Paths archived on the device.
        remote_archive: Temporary archive path on the device.
        timeout: Timeout for archiving and pulling the backup.
    """

    enabled: bool = Field(default=True, description="Pull a backup first")
    remote_paths: list[str] = Field(
        default_factory=lambda: ["/etc/", "/usr/lib/lua/lime/"],
        description="Device paths included in the backup",
    )
    remote_archive: str = Field(
        default="/tmp/backup.tar.gz",
        description="Temporary archive path on the device",
    )
    timeout: float = Field(default=60.0, gt=0, description="Backup timeout")


class CacheConfig(BaseModel):
    """Local cache layout.

    Attributes:
        directory: Root of the cache (helper downloads, backups, session).
    """

    directory: str = Field(
        default="~/.cache/legacy-upgrade",
        description="Local cache directory",
    )

    @property
    def path(self) -> Path:
        """Cache directory with `~` expanded."""
        return Path(self.directory).expanduser()

    @property
    def backups_dir(self) -> Path:
        """Directory holding timestamped backup subdirectories."""
        return self.path / "backups"

    @property
    def session_file(self) -> Path:
        """Persisted upgrade session."""
        return self.path / "upgrade_session.json"


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of console lines.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(
        default=False,
        description="Emit one JSON object per log record",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        device: Target device settings.
        ssh: Remote command channel settings.
        auth: Device web authentication settings.
        transfer: Transfer strategy chain settings.
        helper: safe-upgrade helper settings.
        upgrade: Firmware upgrade settings.
        backup: Configuration backup settings.
        cache: Local cache layout.
        logging: Logging configuration.
    """

    device: DeviceConfig = Field(default_factory=DeviceConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    helper: HelperConfig = Field(default_factory=HelperConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    LEGACY_UPGRADE_TRANSFER__CHUNK_SIZE=256.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        # Passwords stay strings even when they look numeric
        if parts[-1] == "password":
            current[parts[-1]] = value
        else:
            current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Values from the command line (highest precedence).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"device": {"address": "10.13.0.1"}})
        >>> config.transfer.chunk_size
        512
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        default_path = DEFAULT_CONFIG_PATH.expanduser()
        if default_path.exists():
            config_path = default_path
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
