"""
Transfer strategies, one deliver function per StrategyKind.

Every deliver function has the same contract: the chain has already
cleared the destination, the function writes the file there and raises
TransferError on any failure. A clean return only means the commands
succeeded; the chain still verifies the size before trusting it.

Candidates are chosen by walking STRATEGY_ORDER and dropping the kinds the
device or the file rules out, so the order never changes between runs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from legacy_upgrade.errors import AuthError, ConnectivityError, TransferError
from legacy_upgrade.logging import get_logger
from legacy_upgrade.models import Capability, StrategyKind
from legacy_upgrade.remote import commands
from legacy_upgrade.transfer import encoding
from legacy_upgrade.transfer.http_server import TransientFileServer, local_address_for

if TYPE_CHECKING:
    from legacy_upgrade.auth import SessionAuthenticator
    from legacy_upgrade.config import TransferConfig
    from legacy_upgrade.models import Device, TransferJob
    from legacy_upgrade.remote.ssh import RemoteExecutor

logger = get_logger(__name__)

STRATEGY_ORDER: tuple[StrategyKind, ...] = (
    StrategyKind.HTTP_PUSH,
    StrategyKind.HTTP_PULL,
    StrategyKind.WHOLE_FILE_TEXT,
    StrategyKind.CHUNKED_TEXT,
)

# Log chunked progress every this many batches
_PROGRESS_EVERY = 20


@dataclass
class TransferContext:
    """
    Everything a strategy needs besides the job itself.

    Attributes:
        remote: Command channel to the device.
        device: Target device (capabilities already probed).
        config: Transfer settings.
        authenticator: Web session source; None disables HTTP push.
    """

    remote: RemoteExecutor
    device: Device
    config: TransferConfig
    authenticator: SessionAuthenticator | None = None

    @property
    def http_push_available(self) -> bool:
        return self.authenticator is not None and self.config.http_push_enabled


def select_strategies(
    capabilities: frozenset[Capability],
    file_size: int,
    *,
    force_chunked: bool = False,
    whole_file_max_bytes: int = 32768,
    http_push_available: bool = False,
) -> list[StrategyKind]:
    """
    Ordered candidate strategies for one file on one device.

    Args:
        capabilities: Probed device capabilities.
        file_size: Size of the file in bytes.
        force_chunked: Restrict to the chunked text strategy.
        whole_file_max_bytes: Largest file for whole-file text encoding.
        http_push_available: Whether an authenticator is configured.

    Returns:
        Candidates in STRATEGY_ORDER; never empty.
    """
    if force_chunked:
        return [StrategyKind.CHUNKED_TEXT]

    allowed = {
        StrategyKind.HTTP_PUSH: http_push_available,
        StrategyKind.HTTP_PULL: Capability.WGET in capabilities,
        StrategyKind.WHOLE_FILE_TEXT: (
            Capability.BASE64 in capabilities and file_size <= whole_file_max_bytes
        ),
        StrategyKind.CHUNKED_TEXT: True,
    }
    return [kind for kind in STRATEGY_ORDER if allowed[kind]]


# =============================================================================
# HTTP push
# =============================================================================


async def deliver_http_push(ctx: TransferContext, job: TransferJob) -> None:
    """Multipart upload to the device web server, then relocate if needed."""
    if ctx.authenticator is None:
        raise TransferError("HTTP push needs web credentials")

    upload_path = ctx.config.upload_path
    try:
        # Tokens expire within seconds; never reuse one
        token = await ctx.authenticator.login()
    except AuthError as e:
        raise TransferError(
            f"HTTP push login failed: {e.message}",
            details={"strategy": StrategyKind.HTTP_PUSH.value},
        ) from e

    data = job.source_file.read_bytes()
    try:
        async with ctx.authenticator.client(timeout=ctx.config.upload_timeout) as client:
            response = await client.post(
                ctx.config.upload_endpoint,
                data={"sessionid": token, "filename": upload_path},
                files={
                    "filedata": (
                        job.source_file.name,
                        data,
                        "application/octet-stream",
                    )
                },
            )
            response.raise_for_status()
            body = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise TransferError(
            f"HTTP upload failed: {e}",
            details={"endpoint": ctx.config.upload_endpoint},
        ) from e

    reported = body.get("size") if isinstance(body, dict) else None
    if not isinstance(reported, int | str) or str(reported) != str(len(data)):
        raise TransferError(
            f"Upload reported {reported} bytes, expected {len(data)}",
            details={"reported": reported, "expected": len(data)},
        )

    # The upload ACL only allows one path; move from there when needed
    if job.destination_path != upload_path:
        result = await ctx.remote.run(commands.move(upload_path, job.destination_path))
        if not result.ok:
            raise TransferError(
                f"Failed to move upload to {job.destination_path}",
                details={"stderr": result.error_output[:200]},
            )


# =============================================================================
# HTTP pull
# =============================================================================


async def deliver_http_pull(ctx: TransferContext, job: TransferJob) -> None:
    """Serve the file locally and have the device wget it."""
    try:
        advertise_host = ctx.config.advertise_host or local_address_for(
            ctx.device.address
        )
    except OSError as e:
        raise TransferError(f"No local route to {ctx.device.address}: {e}") from e

    try:
        server = TransientFileServer(
            job.source_file, host=advertise_host, port=ctx.config.http_pull_port
        )
        async with server:
            url = server.url_for(advertise_host)
            logger.debug("Device pulling file", extra={"url": url})
            result = await ctx.remote.run(
                commands.wget(url, job.destination_path),
                timeout=ctx.config.download_timeout,
            )
    except OSError as e:
        raise TransferError(f"Failed to start local file server: {e}") from e
    except ConnectivityError as e:
        raise TransferError(f"Device download did not finish: {e.message}") from e

    if not result.ok:
        raise TransferError(
            f"Device could not fetch {url}",
            details={"returncode": result.returncode, "stderr": result.error_output[:200]},
        )


# =============================================================================
# Whole-file text
# =============================================================================


async def deliver_whole_file_text(ctx: TransferContext, job: TransferJob) -> None:
    """Stream base64 into a remote file and decode it in one command."""
    encoded_path = f"{job.destination_path}.b64"
    payload = encoding.base64_encode(job.source_file.read_bytes())

    result = await ctx.remote.run(
        commands.write_stdin(encoded_path),
        stdin=payload,
        timeout=ctx.config.batch_timeout,
    )
    if result.ok:
        result = await ctx.remote.run(
            commands.base64_decode(encoded_path, job.destination_path),
            timeout=ctx.config.batch_timeout,
        )
    if not result.ok:
        await ctx.remote.run(commands.remove(encoded_path))
        raise TransferError(
            "Whole-file text transfer failed",
            details={"returncode": result.returncode, "stderr": result.error_output[:200]},
        )


# =============================================================================
# Chunked text
# =============================================================================


async def deliver_chunked_text(ctx: TransferContext, job: TransferJob) -> None:
    """Append hex chunks in batches of `job.chunk_batch_size`."""
    chunks = encoding.hex_chunks(job.source_file.read_bytes(), job.chunk_size)
    job.total_chunks = len(chunks)
    batches = list(encoding.iter_batches(chunks, job.chunk_batch_size))

    logger.info(
        f"Sending {job.total_chunks} chunks in {len(batches)} batches",
        extra={"chunk_size": job.chunk_size, "batch_size": job.chunk_batch_size},
    )

    for index, batch in enumerate(batches):
        result = await ctx.remote.run(
            commands.append_hex_batch(batch, job.destination_path),
            timeout=ctx.config.batch_timeout,
        )
        if not result.ok:
            first_chunk = index * job.chunk_batch_size
            raise TransferError(
                f"Chunk batch {index + 1}/{len(batches)} failed",
                details={
                    "first_chunk": first_chunk,
                    "returncode": result.returncode,
                    "stderr": result.error_output[:200],
                },
            )
        if (index + 1) % _PROGRESS_EVERY == 0:
            done = min((index + 1) * job.chunk_batch_size, job.total_chunks)
            logger.info(f"Progress: {done}/{job.total_chunks} chunks")


Deliverer = Callable[[TransferContext, "TransferJob"], Awaitable[None]]

DELIVERERS: dict[StrategyKind, Deliverer] = {
    StrategyKind.HTTP_PUSH: deliver_http_push,
    StrategyKind.HTTP_PULL: deliver_http_pull,
    StrategyKind.WHOLE_FILE_TEXT: deliver_whole_file_text,
    StrategyKind.CHUNKED_TEXT: deliver_chunked_text,
}
