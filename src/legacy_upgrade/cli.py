"""
Command-line entry point.

    legacy-upgrade upgrade [ADDRESS] [FIRMWARE] [--auto-confirm] [--force]
                           [--hex] [--confirm] [--wait-confirmation]
                           [--no-backup]
    legacy-upgrade transfer ADDRESS SOURCE [DEST] [--hex]

Exit codes: 0 success, 1 error or reverted upgrade, 2 cancelled,
3 reboot not observed.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import signal
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from legacy_upgrade import __version__
from legacy_upgrade.auth import SessionAuthenticator
from legacy_upgrade.config import AppConfig, load_config
from legacy_upgrade.discovery import detect_device
from legacy_upgrade.errors import InvalidArgumentError, UpgradeToolError
from legacy_upgrade.logging import get_logger, setup_logging
from legacy_upgrade.models import Device, TransferJob
from legacy_upgrade.prompts import ask_operator
from legacy_upgrade.remote.probe import CapabilityProbe
from legacy_upgrade.remote.ssh import ConnectionMultiplexer
from legacy_upgrade.transfer.chain import TransferChain
from legacy_upgrade.transfer.strategies import TransferContext
from legacy_upgrade.upgrade.orchestrator import (
    RunOptions,
    UpgradeOrchestrator,
    UpgradeReport,
)
from legacy_upgrade.verify import IntegrityVerifier

if TYPE_CHECKING:
    import httpx

    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

DEFAULT_PASSWORD = "toorlibre1"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 2


def build_parser() -> argparse.ArgumentParser:
    """Argument parser with the upgrade and transfer subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", type=str, help="Path to configuration file")
    common.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    common.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit one JSON object per log line",
    )

    parser = argparse.ArgumentParser(
        prog="legacy-upgrade",
        description="Deliver safe-upgrade and firmware to legacy LibreRouter devices",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upgrade = subparsers.add_parser(
        "upgrade",
        parents=[common],
        help="Update safe-upgrade and optionally flash a firmware image",
    )
    upgrade.add_argument("address", nargs="?", help="Device address (auto-detected)")
    upgrade.add_argument("firmware", nargs="?", help="Firmware image (.bin)")
    upgrade.add_argument(
        "--auto-confirm",
        action="store_true",
        help="Never prompt; fail where an answer would be needed",
    )
    upgrade.add_argument(
        "--force",
        action="store_true",
        help="Pass --force to safe-upgrade upgrade",
    )
    upgrade.add_argument(
        "--hex",
        action="store_true",
        help="Only use the chunked hex transfer",
    )
    upgrade.add_argument(
        "--confirm",
        action="store_true",
        help="Confirm the new firmware as soon as it is up",
    )
    upgrade.add_argument(
        "--wait-confirmation",
        action="store_true",
        help="Wait until the upgrade is confirmed or reverted",
    )
    upgrade.add_argument(
        "--no-backup",
        action="store_true",
        help="Skip the configuration backup",
    )

    transfer = subparsers.add_parser(
        "transfer",
        parents=[common],
        help="Copy one file to the device with verification",
    )
    transfer.add_argument("address", help="Device address")
    transfer.add_argument("source", help="Local file")
    transfer.add_argument("dest", nargs="?", help="Device path (default /tmp/<name>)")
    transfer.add_argument(
        "--hex",
        action="store_true",
        help="Only use the chunked hex transfer",
    )

    return parser


def split_positionals(
    address: str | None, firmware: str | None
) -> tuple[str | None, str | None]:
    """A single `.bin` positional is the firmware, not the address."""
    if address is not None and firmware is None and address.endswith(".bin"):
        return None, address
    return address, firmware


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if parsed.log_level:
        overrides.setdefault("logging", {})["level"] = parsed.log_level
    if parsed.json_logs:
        overrides.setdefault("logging", {})["json_format"] = True
    return overrides


async def resolve_password(
    config: AppConfig,
    address: str,
    *,
    ask: Callable[[str], str] = getpass.getpass,
) -> str:
    """Password from config or environment, else prompt with a default."""
    if config.device.password is not None:
        return config.device.password
    entered = await ask_operator(
        ask, f"Password for {config.device.username}@{address} [{DEFAULT_PASSWORD}]: "
    )
    return entered or DEFAULT_PASSWORD


async def resolve_address(address: str | None, config: AppConfig) -> str:
    """Explicit address, configured address, or the first reachable candidate."""
    address = address or config.device.address
    if address:
        return address

    found = await detect_device(
        config.device.candidate_addresses, port=config.ssh.port
    )
    if found is None:
        raise InvalidArgumentError(
            "No device found",
            details={"candidates": config.device.candidate_addresses},
            remediation="Pass the device address explicitly, e.g. legacy-upgrade upgrade 10.13.0.1",
        )
    return found


async def transfer_file(
    device: Device,
    config: AppConfig,
    source: Path,
    destination: str,
    *,
    force_chunked: bool = False,
    remote: RemoteExecutor | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> TransferJob:
    """
    Probe the device and deliver one file through the strategy chain.

    Raises:
        ConnectivityError: If the device is unreachable.
        TransferError: If every strategy fails.
    """
    remote = remote or ConnectionMultiplexer(device, config.ssh)
    try:
        capabilities = await CapabilityProbe(remote).probe(device.address)
        device = device.with_capabilities(capabilities)
        context = TransferContext(
            remote=remote,
            device=device,
            config=config.transfer,
            authenticator=SessionAuthenticator(device, config.auth, transport=http_transport),
        )
        chain = TransferChain(
            context, IntegrityVerifier(remote, timeout=config.ssh.command_timeout)
        )
        job = chain.new_job(source, destination, force_chunked=force_chunked)
        await chain.transfer(job)
        return job
    finally:
        await remote.close()


def print_report(report: UpgradeReport, stream: Any = None) -> None:
    """Operator summary of an upgrade run."""
    out = stream or sys.stdout
    print(f"\nResult: {report.final_state.value}", file=out)
    if report.capabilities:
        print(f"Device tools: {', '.join(report.capabilities)}", file=out)
    for label, strategy in report.strategies.items():
        print(f"{label.capitalize()} transferred via {strategy}", file=out)
    if report.helper is not None and report.helper.installed_version:
        print(f"safe-upgrade: {report.helper.installed_version}", file=out)
    if report.backup_file is not None:
        print(f"Configuration backup: {report.backup_file}", file=out)
    for warning in report.warnings:
        print(f"Warning: {warning}", file=out)
    if report.error:
        print(f"Error: {report.error['message']}", file=out)
        if report.error.get("remediation"):
            print(f"  Try: {report.error['remediation']}", file=out)
    if report.next_steps:
        print("\nNext steps:", file=out)
        for step in report.next_steps:
            print(f"  - {step}", file=out)


async def _run_upgrade(parsed: argparse.Namespace, config: AppConfig) -> int:
    address, firmware = split_positionals(parsed.address, parsed.firmware)
    address = await resolve_address(address, config)
    device = Device(
        address=address,
        username=config.device.username,
        password=await resolve_password(config, address),
    )

    options = RunOptions(
        firmware=Path(firmware).expanduser() if firmware else None,
        auto_confirm=parsed.auto_confirm,
        force=parsed.force,
        force_chunked=parsed.hex,
        confirm=parsed.confirm,
        wait_for_confirmation=True if parsed.wait_confirmation else None,
        backup=not parsed.no_backup,
    )
    report = await UpgradeOrchestrator(device, config).run(options)
    print_report(report)
    return report.exit_code


async def _run_transfer(parsed: argparse.Namespace, config: AppConfig) -> int:
    source = Path(parsed.source).expanduser()
    if not source.is_file():
        raise InvalidArgumentError(
            f"Source file not found: {source}",
            details={"path": str(source)},
        )
    device = Device(
        address=parsed.address,
        username=config.device.username,
        password=await resolve_password(config, parsed.address),
    )

    destination = parsed.dest or f"/tmp/{source.name}"
    job = await transfer_file(device, config, source, destination, force_chunked=parsed.hex)
    assert job.chosen_strategy is not None
    print(
        f"Transferred {source.name} to {destination} via {job.chosen_strategy.value} "
        f"({job.file_size} bytes verified)"
    )
    return EXIT_OK


async def _run_cancellable(coro: Coroutine[Any, Any, int]) -> int:
    """Run `coro` so SIGTERM/SIGINT cancel it and its cleanup still runs."""
    task = asyncio.ensure_future(coro)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (ValueError, NotImplementedError):
            # Signal handling not supported on this platform
            pass

    try:
        return await task
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, NotImplementedError):
                pass


def main(argv: list[str] | None = None) -> int:
    """CLI entry point; returns the process exit code."""
    parsed = build_parser().parse_args(argv)

    try:
        config = load_config(parsed.config, overrides=_cli_overrides(parsed))
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.logging)

    runner = _run_upgrade if parsed.command == "upgrade" else _run_transfer
    try:
        return asyncio.run(_run_cancellable(runner(parsed, config)))
    except asyncio.CancelledError:
        logger.warning("Interrupted; connection closed")
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_CANCELLED
    except UpgradeToolError as e:
        logger.error(e.message, extra={"error_code": e.error_code})
        print(f"Error: {e.message}", file=sys.stderr)
        if e.remediation:
            print(f"  Try: {e.remediation}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
