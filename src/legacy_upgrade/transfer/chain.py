"""
Fallback chain over the transfer strategies.

Each attempt starts from an emptied destination and ends with a size check.
A failed attempt is recorded and never resumed: the next candidate starts
over from byte zero.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from legacy_upgrade.errors import ConnectivityError, TransferError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.models import StrategyKind, TransferJob
from legacy_upgrade.remote import commands
from legacy_upgrade.transfer.strategies import DELIVERERS, select_strategies

if TYPE_CHECKING:
    from legacy_upgrade.transfer.strategies import TransferContext
    from legacy_upgrade.verify import IntegrityVerifier

logger = get_logger(__name__)

# Called before every attempt; raising OperationCancelledError aborts the chain
BeforeAttempt = Callable[[TransferJob, StrategyKind], Awaitable[None]]


class TransferChain:
    """
    Tries candidate strategies in order until one delivers a verified file.

    Example:
        >>> chain = TransferChain(context, verifier)
        >>> job = chain.new_job(Path("fw.bin"), "/tmp/firmware.bin")
        >>> await chain.transfer(job)
        <StrategyKind.HTTP_PULL: 'http_pull'>
    """

    def __init__(
        self,
        context: TransferContext,
        verifier: IntegrityVerifier,
        *,
        before_attempt: BeforeAttempt | None = None,
    ) -> None:
        self.context = context
        self.verifier = verifier
        self.before_attempt = before_attempt

    def new_job(
        self,
        source_file: Path,
        destination_path: str,
        *,
        expected_sha256: str | None = None,
        force_chunked: bool = False,
    ) -> TransferJob:
        """
        Build a job whose candidates fit the device and the file.

        Args:
            source_file: Local file to send.
            destination_path: Path on the device.
            expected_sha256: Also verify this hash after the size check.
            force_chunked: Only use the chunked text strategy.
        """
        config = self.context.config
        candidates = select_strategies(
            self.context.device.capabilities,
            source_file.stat().st_size,
            force_chunked=force_chunked,
            whole_file_max_bytes=config.whole_file_max_bytes,
            http_push_available=self.context.http_push_available,
        )
        return TransferJob(
            source_file=source_file,
            destination_path=destination_path,
            candidates=candidates,
            chunk_size=config.chunk_size,
            chunk_batch_size=config.chunk_batch_size,
            expected_sha256=expected_sha256,
        )

    async def attempt(self, job: TransferJob, kind: StrategyKind) -> bool:
        """
        Run one strategy from a cleared destination and verify the result.

        Returns:
            True when the file arrived intact.

        Raises:
            AuthError: If the device rejects the SSH credentials.
            OperationCancelledError: If `before_attempt` declines.
        """
        if self.before_attempt is not None:
            await self.before_attempt(job, kind)

        logger.info(
            f"Transferring {job.source_file.name} via {kind.value}",
            extra={
                "strategy": kind.value,
                "size": job.file_size,
                "destination": job.destination_path,
            },
        )

        try:
            cleared = await self.context.remote.run(
                commands.truncate(job.destination_path)
            )
            if not cleared.ok:
                raise TransferError(
                    f"Cannot clear {job.destination_path}",
                    details={"stderr": cleared.error_output[:200]},
                )

            await DELIVERERS[kind](self.context, job)
            await self.verifier.verify_size(job.source_file, job.destination_path)
            if job.expected_sha256:
                await self.verifier.verify_hash(job.expected_sha256, job.destination_path)

        except (TransferError, ConnectivityError) as e:
            # A stalled step drops the channel; the next attempt reconnects
            job.attempts[kind.value] = e.message
            logger.warning(
                f"Strategy {kind.value} failed: {e.message}",
                extra={"strategy": kind.value, "error_code": e.error_code},
            )
            return False

        job.chosen_strategy = kind
        job.attempts[kind.value] = "ok"
        logger.info(
            f"Transfer complete via {kind.value}",
            extra={"strategy": kind.value, "destination": job.destination_path},
        )
        return True

    async def attempt_next(self, job: TransferJob) -> bool:
        """
        Attempt the candidate at the cursor and advance past it.

        A failure that leaves no candidates removes the partial destination.
        """
        kind = job.next_strategy
        if kind is None:
            return False

        job.cursor += 1
        ok = await self.attempt(job, kind)

        if not ok and job.exhausted:
            try:
                await self.context.remote.run(commands.remove(job.destination_path))
            except ConnectivityError as e:
                logger.warning(
                    f"Could not remove partial {job.destination_path}: {e.message}",
                    extra={"destination": job.destination_path},
                )
        return ok

    async def transfer(self, job: TransferJob) -> StrategyKind:
        """
        Try candidates until one succeeds.

        Returns:
            The strategy that delivered the file.

        Raises:
            TransferError: If every candidate failed.
        """
        while not job.exhausted:
            if await self.attempt_next(job):
                assert job.chosen_strategy is not None
                return job.chosen_strategy

        raise exhausted_error(job)


def exhausted_error(job: TransferJob) -> TransferError:
    """The fatal error reported when no strategy delivered `job`."""
    return TransferError(
        f"All transfer strategies failed for {job.source_file.name}",
        details={"destination": job.destination_path, "attempts": dict(job.attempts)},
        remediation=(
            "Retry with --hex to force the chunked text transfer, or upload the "
            "firmware through the device web interface"
        ),
    )
