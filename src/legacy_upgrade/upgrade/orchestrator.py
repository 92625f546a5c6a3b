"""
Upgrade orchestrator.

Drives the state machine from `idle` to a terminal state: each state's
effect runs against the device and reports the event that picks the next
state. The command channel is closed on every exit route.

Nothing after `execute_upgrade` can be cancelled: from there on the run
only observes. The device reverts on its own when the confirmation window
passes, whether or not this process is still running.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from legacy_upgrade.auth import SessionAuthenticator
from legacy_upgrade.backup import pull_config_backup
from legacy_upgrade.errors import (
    BackupError,
    ConnectivityError,
    HelperInstallError,
    InvalidArgumentError,
    OperationCancelledError,
    RebootTimeoutError,
    TransferError,
    UpgradeExecutionError,
    UpgradeToolError,
    VerificationError,
)
from legacy_upgrade.helper import HelperManager
from legacy_upgrade.logging import get_logger
from legacy_upgrade.models import (
    Capability,
    Device,
    HelperVersionState,
    StrategyKind,
    TransferJob,
    UpgradeSession,
    UpgradeStatus,
)
from legacy_upgrade.prompts import ask_operator, confirm
from legacy_upgrade.remote import commands
from legacy_upgrade.remote.probe import CapabilityProbe
from legacy_upgrade.remote.ssh import ConnectionMultiplexer
from legacy_upgrade.transfer.chain import BeforeAttempt, TransferChain, exhausted_error
from legacy_upgrade.transfer.strategies import TransferContext
from legacy_upgrade.upgrade.device import SafeUpgradeClient, UpgradeCommandOutcome
from legacy_upgrade.upgrade.state_machine import (
    Effect,
    UpgradeEvent,
    UpgradeState,
    transition,
)
from legacy_upgrade.verify import IntegrityVerifier

if TYPE_CHECKING:
    import httpx

    from legacy_upgrade.config import AppConfig
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

# Rough throughput of the chunked text path on legacy hardware
CHUNKED_BYTES_PER_MINUTE = 64 * 1024

EXIT_CODES: dict[UpgradeState, int] = {
    UpgradeState.DONE: 0,
    UpgradeState.CONFIRMED: 0,
    UpgradeState.CONFIRMATION_PENDING: 0,
    UpgradeState.TIMED_OUT_REVERT: 1,
    UpgradeState.FAILED: 1,
    UpgradeState.CANCELLED: 2,
    UpgradeState.REBOOT_UNVERIFIED: 3,
}

Prompt = Callable[[str], bool]
RemoteFactory = Callable[[Device, "int | None"], "RemoteExecutor"]


def exit_code_for(state: UpgradeState) -> int:
    """Process exit code for a final state; 1 for anything unexpected."""
    return EXIT_CODES.get(state, 1)


def estimate_chunked_minutes(size: int) -> int:
    return max(1, round(size / CHUNKED_BYTES_PER_MINUTE))


@dataclass
class RunOptions:
    """
    Operator choices for one run.

    Attributes:
        firmware: Local firmware image; None only manages the helper.
        auto_confirm: Never prompt; prompts that need an answer fail instead.
        force: Pass --force to the upgrade even if verification passes.
        force_chunked: Only use the chunked text transfer.
        confirm: Confirm the new firmware as soon as it is up.
        wait_for_confirmation: Block until confirmed or reverted
            (None defers to config).
        backup: Pull a configuration backup before the transfer.
    """

    firmware: Path | None = None
    auto_confirm: bool = False
    force: bool = False
    force_chunked: bool = False
    confirm: bool = False
    wait_for_confirmation: bool | None = None
    backup: bool = True


class UpgradeReport(BaseModel):
    """Outcome of a run."""

    final_state: UpgradeState = UpgradeState.IDLE
    address: str
    capabilities: list[str] = Field(default_factory=list)
    strategies: dict[str, str] = Field(default_factory=dict)
    helper: HelperVersionState | None = None
    session: UpgradeSession | None = None
    backup_file: Path | None = None
    warnings: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = None

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.final_state)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def save_session(path: Path, session: UpgradeSession) -> None:
    """Persist the session with an atomic rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(session.model_dump(mode="json"), f, indent=2)
        temp_file.replace(path)
        logger.debug("Saved upgrade session", extra={"path": str(path)})
    except OSError as e:
        logger.warning(f"Failed to save upgrade session: {e}")


def load_session(path: Path) -> UpgradeSession | None:
    """Read a persisted session, if any."""
    try:
        with open(path) as f:
            return UpgradeSession.model_validate(json.load(f))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load upgrade session: {e}")
        return None


class UpgradeOrchestrator:
    """
    Sequences probe, helper check, transfer, upgrade and confirmation.

    Example:
        >>> orchestrator = UpgradeOrchestrator(device, config)
        >>> report = await orchestrator.run(RunOptions(firmware=Path("fw.bin")))
        >>> report.final_state
        <UpgradeState.CONFIRMATION_PENDING: 'confirmation_pending'>
    """

    def __init__(
        self,
        device: Device,
        config: AppConfig,
        *,
        remote_factory: RemoteFactory | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        prompt: Prompt | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            device: Target device with credentials.
            config: Application configuration.
            remote_factory: Builds a command channel for (device,
                connect_timeout); defaults to ConnectionMultiplexer.
            http_transport: httpx transport for web login, upload and helper
                download (tests inject a MockTransport).
            prompt: Yes/no question callback for the operator.
            sleep: Awaitable sleep used by reboot and confirmation waits.
            clock: Current time source.
        """
        self.device = device
        self.config = config
        self._remote_factory = remote_factory or self._ssh_factory
        self._http_transport = http_transport
        self._prompt = prompt or confirm
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

        self.state = UpgradeState.IDLE
        self.options = RunOptions()
        self.report = UpgradeReport(address=device.address)
        self.remote: RemoteExecutor | None = None

        self._helper_state: HelperVersionState | None = None
        self._helper_job: TransferJob | None = None
        self._firmware_job: TransferJob | None = None
        self._session: UpgradeSession | None = None
        self._force_upgrade = False

        self._effects: dict[Effect, Callable[[], Awaitable[UpgradeEvent]]] = {
            Effect.PROBE: self._probe,
            Effect.CHECK_HELPER: self._check_helper,
            Effect.TRANSFER_HELPER: self._transfer_helper,
            Effect.INSTALL_HELPER: self._install_helper,
            Effect.SELECT_FIRMWARE_STEP: self._select_firmware_step,
            Effect.CHECK_FIRMWARE_FILE: self._check_firmware_file,
            Effect.BACKUP_CONFIG: self._backup_config,
            Effect.TRANSFER_FIRMWARE: self._transfer_firmware,
            Effect.VERIFY_ON_DEVICE: self._verify_on_device,
            Effect.EXECUTE_UPGRADE: self._execute_upgrade,
            Effect.WAIT_FOR_REBOOT: self._wait_for_reboot,
            Effect.READ_NEW_FIRMWARE: self._read_new_firmware,
            Effect.AWAIT_CONFIRMATION: self._await_confirmation,
        }

    def _ssh_factory(self, device: Device, connect_timeout: int | None) -> RemoteExecutor:
        return ConnectionMultiplexer(device, self.config.ssh, connect_timeout=connect_timeout)

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self, options: RunOptions | None = None) -> UpgradeReport:
        """
        Run the flow to a terminal state.

        Args:
            options: Operator choices for this run.

        Returns:
            The report; `report.exit_code` is the process exit code.
        """
        self.options = options or RunOptions()
        self._force_upgrade = self.options.force
        self.remote = self._remote_factory(self.device, None)

        try:
            self.state, effect = transition(UpgradeState.IDLE, UpgradeEvent.START)
            while effect is not Effect.NONE:
                logger.debug("Entering state", extra={"state": self.state.value})
                event = await self._perform(effect)
                self.state, effect = transition(self.state, event)
        finally:
            await self._close_remote()

        self.report.final_state = self.state
        self.report.session = self._session
        self.report.helper = self._helper_state
        logger.info(
            f"Upgrade run finished: {self.state.value}",
            extra={"state": self.state.value, "strategies": self.report.strategies},
        )
        return self.report

    async def _perform(self, effect: Effect) -> UpgradeEvent:
        try:
            return await self._effects[effect]()
        except OperationCancelledError as e:
            logger.warning(e.message, extra={"state": self.state.value})
            self.report.error = e.to_dict()
            return UpgradeEvent.CANCEL
        except UpgradeToolError as e:
            logger.error(
                e.message,
                extra={"state": self.state.value, "error_code": e.error_code},
            )
            self.report.error = e.to_dict()
            return UpgradeEvent.FATAL

    async def _close_remote(self) -> None:
        if self.remote is not None:
            await self.remote.close()
            self.remote = None

    def _require_remote(self) -> RemoteExecutor:
        if self.remote is None:
            self.remote = self._remote_factory(self.device, None)
        return self.remote

    def _warn(self, message: str, **extra: Any) -> None:
        logger.warning(message, extra=extra)
        self.report.warnings.append(message)

    async def _ask(self, question: str, *, auto_answer_error: UpgradeToolError) -> None:
        """Ask the operator; in auto-confirm mode fail with `auto_answer_error`."""
        if self.options.auto_confirm:
            raise auto_answer_error
        if not await ask_operator(self._prompt, question):
            raise OperationCancelledError(details={"question": question})

    def _chain(
        self,
        before_attempt: BeforeAttempt | None = None,
    ) -> TransferChain:
        remote = self._require_remote()
        authenticator = SessionAuthenticator(
            self.device, self.config.auth, transport=self._http_transport
        )
        context = TransferContext(
            remote=remote,
            device=self.device,
            config=self.config.transfer,
            authenticator=authenticator,
        )
        verifier = IntegrityVerifier(remote, timeout=self.config.ssh.command_timeout)
        return TransferChain(context, verifier, before_attempt=before_attempt)

    async def _step_transfer(
        self, chain: TransferChain, job: TransferJob, label: str
    ) -> UpgradeEvent:
        """One chain attempt mapped to a state machine event."""
        if await chain.attempt_next(job):
            assert job.chosen_strategy is not None
            self.report.strategies[label] = job.chosen_strategy.value
            return UpgradeEvent.TRANSFER_OK
        if job.exhausted:
            error = exhausted_error(job)
            logger.error(error.message, extra={"attempts": job.attempts})
            self.report.error = error.to_dict()
            return UpgradeEvent.STRATEGIES_EXHAUSTED
        return UpgradeEvent.STRATEGY_FAILED

    def _helper_client(self) -> SafeUpgradeClient:
        return SafeUpgradeClient(
            self._require_remote(),
            self.config.helper.remote_path,
            timeout=self.config.upgrade.command_timeout,
        )

    # =========================================================================
    # Effects
    # =========================================================================

    async def _probe(self) -> UpgradeEvent:
        probe = CapabilityProbe(
            self._require_remote(), timeout=float(self.config.ssh.connect_timeout + 5)
        )
        capabilities = await probe.probe(self.device.address)
        self.device = self.device.with_capabilities(capabilities)
        self.report.capabilities = sorted(c.value for c in capabilities)
        return UpgradeEvent.PROBE_OK

    async def _check_helper(self) -> UpgradeEvent:
        manager = HelperManager(
            self._require_remote(),
            self.config.helper,
            self.config.cache,
            transport=self._http_transport,
        )
        self._helper_state, needs_install = await manager.check()
        return UpgradeEvent.HELPER_OUTDATED if needs_install else UpgradeEvent.HELPER_CURRENT

    async def _transfer_helper(self) -> UpgradeEvent:
        state = self._helper_state
        if state is None or state.downloaded_file is None:
            raise HelperInstallError(
                "No downloaded helper to transfer",
                remediation="Re-run to download safe-upgrade again",
            )

        chain = self._chain()
        if self._helper_job is None:
            self._helper_job = chain.new_job(
                state.downloaded_file,
                self.config.helper.staging_path,
                expected_sha256=state.downloaded_hash,
                force_chunked=self.options.force_chunked,
            )
        return await self._step_transfer(chain, self._helper_job, "helper")

    async def _install_helper(self) -> UpgradeEvent:
        assert self._helper_state is not None
        manager = HelperManager(self._require_remote(), self.config.helper, self.config.cache)
        self._helper_state = await manager.install(self._helper_state)
        return UpgradeEvent.INSTALLED

    async def _select_firmware_step(self) -> UpgradeEvent:
        if self.options.firmware is None:
            logger.info("No firmware supplied; helper check complete")
            return UpgradeEvent.NO_FIRMWARE
        return UpgradeEvent.FIRMWARE_SUPPLIED

    async def _check_firmware_file(self) -> UpgradeEvent:
        firmware = self.options.firmware
        assert firmware is not None
        if not firmware.is_file():
            raise InvalidArgumentError(
                f"Firmware file not found: {firmware}",
                details={"path": str(firmware)},
                remediation="Pass the path of a .bin sysupgrade image",
            )

        size = firmware.stat().st_size
        cfg = self.config.upgrade
        if size < cfg.min_firmware_bytes:
            self._warn(f"Firmware is unusually small ({size} bytes)", size=size)
        if size > cfg.max_firmware_bytes:
            self._warn(f"Firmware is unusually large ({size} bytes)", size=size)
        if firmware.suffix != ".bin":
            self._warn(f"Firmware does not have a .bin extension: {firmware.name}")

        if not self.device.has(Capability.WGET) or self.options.force_chunked:
            logger.info(
                f"Chunked transfer, if needed, takes about "
                f"{estimate_chunked_minutes(size)} min",
                extra={"size": size},
            )
        logger.info(f"Firmware file OK: {firmware.name} ({size} bytes)")
        return UpgradeEvent.FILE_OK

    async def _backup_config(self) -> UpgradeEvent:
        if not (self.options.backup and self.config.backup.enabled):
            logger.info("Configuration backup skipped")
            return UpgradeEvent.BACKUP_FINISHED

        try:
            self.report.backup_file = await pull_config_backup(
                self._require_remote(),
                self.config.backup,
                self.config.cache,
                now=self._clock(),
            )
        except BackupError as e:
            self._warn(f"Configuration backup failed: {e.message}")
        return UpgradeEvent.BACKUP_FINISHED

    async def _confirm_slow_path(self, job: TransferJob, kind: StrategyKind) -> None:
        if kind is not StrategyKind.CHUNKED_TEXT or self.options.force_chunked:
            return
        if job.file_size <= self.config.upgrade.slow_transfer_prompt_bytes:
            return

        minutes = estimate_chunked_minutes(job.file_size)
        await self._ask(
            f"Faster transfers failed. Chunked transfer takes about {minutes} min. Continue?",
            auto_answer_error=TransferError(
                "Only the slow chunked transfer is left",
                details={"size": job.file_size, "estimated_minutes": minutes},
                remediation=(
                    f"Upload the firmware at {self.device.base_url}, "
                    "or re-run with --hex to accept the chunked transfer"
                ),
            ),
        )

    async def _transfer_firmware(self) -> UpgradeEvent:
        firmware = self.options.firmware
        assert firmware is not None
        chain = self._chain(before_attempt=self._confirm_slow_path)
        if self._firmware_job is None:
            self._firmware_job = chain.new_job(
                firmware,
                self.config.upgrade.firmware_path,
                force_chunked=self.options.force_chunked,
            )
        return await self._step_transfer(chain, self._firmware_job, "firmware")

    async def _verify_on_device(self) -> UpgradeEvent:
        result = await self._helper_client().verify(self.config.upgrade.firmware_path)
        if result.ok:
            logger.info("Firmware verified by safe-upgrade")
            return UpgradeEvent.DEVICE_VERIFIED

        detail = (result.error_output or result.output)[:200]
        if self._force_upgrade:
            self._warn(f"safe-upgrade verify failed, continuing with --force: {detail}")
            return UpgradeEvent.DEVICE_VERIFIED

        await self._ask(
            "safe-upgrade could not verify the firmware. Upgrade anyway with --force?",
            auto_answer_error=VerificationError(
                "safe-upgrade rejected the firmware image",
                details={"output": detail},
                remediation="Check the image matches the device model, or re-run with --force",
            ),
        )
        self._force_upgrade = True
        self._warn("Operator chose to force the upgrade after failed verification")
        return UpgradeEvent.DEVICE_VERIFIED

    async def _execute_upgrade(self) -> UpgradeEvent:
        if not self.options.auto_confirm and not await ask_operator(
            self._prompt, f"Upgrade {self.device.address} now? The device will reboot"
        ):
            raise OperationCancelledError()

        client = self._helper_client()
        if not await client.ensure_bootstrapped():
            raise HelperInstallError(
                "safe-upgrade is not bootstrapped and bootstrap failed",
                remediation=f"Run 'ssh root@{self.device.address} safe-upgrade bootstrap'",
            )

        status = await client.status()
        window = self.config.upgrade.confirm_window_seconds
        firmware_strategy = self.report.strategies.get("firmware")
        # The deadline exists before the reboot does
        self._session = UpgradeSession.open(
            window,
            now=self._clock(),
            firmware_file=str(self.options.firmware) if self.options.firmware else None,
            strategy=StrategyKind(firmware_strategy) if firmware_strategy else None,
            previous_partition=status.current_partition if status else None,
        )
        save_session(self.config.cache.session_file, self._session)

        logger.info(
            "Issuing safe-upgrade",
            extra={"window_seconds": window, "force": self._force_upgrade},
        )
        outcome, result = await client.upgrade(
            self.config.upgrade.firmware_path, window, force=self._force_upgrade
        )
        if outcome == UpgradeCommandOutcome.EXITED and result is not None and not result.ok:
            self._session = None
            self.config.cache.session_file.unlink(missing_ok=True)
            raise UpgradeExecutionError(
                "safe-upgrade upgrade failed; the device was not changed",
                details={
                    "returncode": result.returncode,
                    "output": (result.error_output or result.output)[:300],
                },
                remediation=(
                    f"Run 'ssh root@{self.device.address} safe-upgrade upgrade "
                    f"{self.config.upgrade.firmware_path}' by hand to see the error"
                ),
            )

        logger.info(f"Upgrade issued ({outcome.value}); device is rebooting")
        await self._close_remote()
        return UpgradeEvent.UPGRADE_ISSUED

    async def _poll_device(self) -> bool:
        timeout = self.config.upgrade.reboot_probe_timeout
        remote = self._remote_factory(self.device, timeout)
        try:
            result = await remote.run(commands.ECHO_PROBE, timeout=float(timeout * 2))
        except ConnectivityError:
            await remote.close()
            return False
        if result.ok and result.output == "ok":
            self.remote = remote
            return True
        await remote.close()
        return False

    async def _wait_for_reboot(self) -> UpgradeEvent:
        cfg = self.config.upgrade
        logger.info(f"Waiting {cfg.reboot_initial_wait:.0f}s for the reboot")
        await self._sleep(cfg.reboot_initial_wait)

        waited = 0.0
        while waited < cfg.reboot_max_wait:
            if await self._poll_device():
                logger.info("Device is back online")
                return UpgradeEvent.DEVICE_BACK
            await self._sleep(cfg.reboot_poll_interval)
            waited += cfg.reboot_poll_interval
            logger.info(f"Device not reachable yet ({waited:.0f}s)")

        error = RebootTimeoutError(
            f"Device did not come back within {cfg.reboot_max_wait:.0f}s",
            details={"address": self.device.address},
            remediation=(
                f"It may still be booting. Check with 'ping {self.device.address}', then "
                f"'ssh root@{self.device.address} safe-upgrade confirm' before the "
                "confirmation window ends"
            ),
        )
        self._warn(error.message)
        self.report.error = error.to_dict()
        self._add_confirmation_steps()
        return UpgradeEvent.REBOOT_TIMEOUT

    async def _read_new_firmware(self) -> UpgradeEvent:
        status = await self._helper_client().status()
        if status is None:
            self._warn("Could not read safe-upgrade status after the reboot")
        else:
            logger.info(
                "New firmware is running",
                extra={
                    "current_partition": status.current_partition,
                    "version": status.version,
                },
            )
            if self._session is not None:
                self._session.active_partition = status.current_partition
        if self._session is not None:
            save_session(self.config.cache.session_file, self._session)
        return UpgradeEvent.FIRMWARE_RUNNING

    def _add_confirmation_steps(self) -> None:
        address = self.device.address
        if self._session is not None:
            minutes = max(0, int(self._session.remaining_seconds(self._clock()) // 60))
            self.report.next_steps.append(
                f"Confirm within {minutes} minutes or the device reverts automatically"
            )
        self.report.next_steps.extend(
            [
                f"Web interface: http://{address}",
                f"SSH: ssh root@{address} 'safe-upgrade confirm'",
            ]
        )

    async def _await_confirmation(self) -> UpgradeEvent:
        client = self._helper_client()
        assert self._session is not None
        session = self._session

        try:
            remaining = await client.confirm_remaining()
        except ConnectivityError as e:
            self._warn(f"Lost the device while reading the confirmation window: {e.message}")
            self._add_confirmation_steps()
            return UpgradeEvent.HANDED_OFF

        if remaining is not None and remaining > 0:
            session.sync_remaining(remaining, self._clock())
            save_session(self.config.cache.session_file, session)
            logger.info(f"Confirmation window: {remaining}s left")

        if self.options.confirm:
            result = await client.confirm()
            if result.ok:
                session.mark_confirmed()
                save_session(self.config.cache.session_file, session)
                return UpgradeEvent.CONFIRM
            self._warn(f"safe-upgrade confirm failed: {result.error_output[:200]}")
            self._add_confirmation_steps()
            return UpgradeEvent.HANDED_OFF

        wait = self.options.wait_for_confirmation
        if wait is None:
            wait = self.config.upgrade.wait_for_confirmation
        if not wait:
            self._add_confirmation_steps()
            return UpgradeEvent.HANDED_OFF

        return await self._wait_for_confirmation(client, session)

    async def _wait_for_confirmation(
        self, client: SafeUpgradeClient, session: UpgradeSession
    ) -> UpgradeEvent:
        self._add_confirmation_steps()
        logger.info("Waiting for the upgrade to be confirmed")
        while True:
            now = self._clock()
            if session.refresh(now) is not UpgradeStatus.TESTING:
                logger.warning("Confirmation window passed; the device reverts")
                save_session(self.config.cache.session_file, session)
                return UpgradeEvent.CONFIRM_TIMEOUT

            try:
                remaining = await client.confirm_remaining()
            except ConnectivityError as e:
                logger.debug(f"Device unreachable while waiting: {e.message}")
            else:
                if remaining is None or remaining <= 0:
                    session.mark_confirmed()
                    save_session(self.config.cache.session_file, session)
                    logger.info("Upgrade confirmed")
                    return UpgradeEvent.CONFIRM

            await self._sleep(self.config.upgrade.confirm_poll_interval)
