"""
Data model for an upgrade run.

- Device: who we talk to, and what its shell can do.
- TransferJob: one file on its way to one device path.
- HelperVersionState: what the safe-upgrade helper on the device looks like.
- UpgradeSession: the safe-upgrade testing window opened by an upgrade.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class Capability(str, Enum):
    """Shell utilities that unlock faster transfer strategies."""

    WGET = "wget"
    BASE64 = "base64"
    NETCAT = "netcat"


class StrategyKind(str, Enum):
    """
    Transfer strategies, declared in the order they are tried.

    - http_push: multipart upload to the device web server
    - http_pull: device fetches from a transient local HTTP server
    - whole_file_text: base64 of the whole file through one remote cat
    - chunked_text: hex chunks appended in batched remote commands
    """

    HTTP_PUSH = "http_push"
    HTTP_PULL = "http_pull"
    WHOLE_FILE_TEXT = "whole_file_text"
    CHUNKED_TEXT = "chunked_text"


class Device(BaseModel):
    """
    The target device and the credentials used for it.

    Passed explicitly to every component that talks to the device. Frozen:
    capabilities are filled in once via `with_capabilities`.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    username: str = "root"
    password: str | None = Field(default=None, repr=False)
    capabilities: frozenset[Capability] = frozenset()
    session_token: str | None = Field(default=None, repr=False)

    def with_capabilities(self, capabilities: frozenset[Capability]) -> Device:
        """Return a copy carrying the probed capabilities."""
        return self.model_copy(update={"capabilities": frozenset(capabilities)})

    def has(self, capability: Capability) -> bool:
        """Whether the probe found `capability`."""
        return capability in self.capabilities

    @property
    def base_url(self) -> str:
        """Root URL of the device web server."""
        return f"http://{self.address}"


class TransferJob(BaseModel):
    """
    One transfer of a local file to a device path.

    `candidates` is the ordered strategy list after capability filtering and
    `cursor` points at the next one to try. A job is complete only after a
    verified byte-count match.
    """

    source_file: Path
    destination_path: str
    candidates: list[StrategyKind] = Field(default_factory=list)
    cursor: int = 0
    chosen_strategy: StrategyKind | None = None
    chunk_size: int = 512
    chunk_batch_size: int = 5
    total_chunks: int = 0
    expected_sha256: str | None = None
    attempts: dict[str, str] = Field(default_factory=dict)

    @property
    def file_size(self) -> int:
        """Size of the local source file."""
        return self.source_file.stat().st_size

    @property
    def exhausted(self) -> bool:
        """No candidates left to try."""
        return self.cursor >= len(self.candidates)

    @property
    def next_strategy(self) -> StrategyKind | None:
        """Candidate that the next attempt will use."""
        if self.exhausted:
            return None
        return self.candidates[self.cursor]

    @property
    def completed(self) -> bool:
        """Whether a strategy delivered and verified the file."""
        return self.chosen_strategy is not None


class HelperVersionState(BaseModel):
    """State of the safe-upgrade helper on the device."""

    installed: bool = False
    installed_hash: str | None = None
    installed_version: str | None = None
    known_latest_hash: str
    downloaded_hash: str | None = None
    downloaded_file: Path | None = None
    bootstrapped: bool = False

    @property
    def is_current(self) -> bool:
        """Installed helper matches the pinned latest hash."""
        return (
            self.installed_hash is not None
            and self.installed_hash == self.known_latest_hash
        )


class UpgradeStatus(str, Enum):
    """Lifecycle of a safe-upgrade testing window."""

    TESTING = "testing"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class UpgradeSession(BaseModel):
    """
    A safe-upgrade testing window.

    The deadline is fixed when the upgrade command is issued, before the
    device reboots. The device reverts on its own once it passes, whether
    or not this process is still alive.
    """

    confirm_deadline: datetime
    status: UpgradeStatus = UpgradeStatus.TESTING
    active_partition: int | None = None
    previous_partition: int | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    firmware_file: str | None = None
    strategy: StrategyKind | None = None

    @classmethod
    def open(
        cls,
        window_seconds: int,
        *,
        now: datetime | None = None,
        **kwargs: object,
    ) -> UpgradeSession:
        """Start a session whose deadline is `window_seconds` from `now`."""
        started = now or datetime.now(UTC)
        return cls(
            confirm_deadline=started + timedelta(seconds=window_seconds),
            started_at=started,
            **kwargs,
        )

    def remaining_seconds(self, now: datetime | None = None) -> float:
        """Seconds left in the window; zero or negative once it has passed."""
        now = now or datetime.now(UTC)
        return (self.confirm_deadline - now).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the deadline has passed."""
        return self.remaining_seconds(now) <= 0

    def refresh(self, now: datetime | None = None) -> UpgradeStatus:
        """Move an unconfirmed, expired session to rolled_back."""
        if self.status is UpgradeStatus.TESTING and self.is_expired(now):
            self.status = UpgradeStatus.ROLLED_BACK
        return self.status

    def mark_confirmed(self) -> None:
        """Record that the new firmware was confirmed."""
        self.status = UpgradeStatus.CONFIRMED

    def sync_remaining(self, seconds: int, now: datetime | None = None) -> None:
        """Align the deadline with the remaining time the device reports."""
        now = now or datetime.now(UTC)
        self.confirm_deadline = now + timedelta(seconds=seconds)
