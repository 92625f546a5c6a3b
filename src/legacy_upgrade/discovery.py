"""
Device address auto-detection.

Candidates are tried in order with a plain TCP connect to the SSH port;
the first one that accepts is the device.
"""

from __future__ import annotations

import asyncio
import contextlib

from legacy_upgrade.logging import get_logger

logger = get_logger(__name__)


async def is_reachable(address: str, port: int = 22, timeout: float = 3.0) -> bool:
    """Whether `address` accepts TCP connections on `port`."""
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address, port), timeout=timeout
        )
    except (OSError, TimeoutError):
        return False

    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def detect_device(
    candidates: list[str],
    *,
    port: int = 22,
    timeout: float = 3.0,
) -> str | None:
    """
    Return the first reachable candidate address.

    Args:
        candidates: Addresses in preference order.
        port: SSH port to test.
        timeout: Per-candidate connect timeout.

    Returns:
        The address, or None if none answered.
    """
    for address in candidates:
        logger.debug(f"Trying {address}", extra={"port": port})
        if await is_reachable(address, port, timeout):
            logger.info(f"Found device at {address}")
            return address
    return None
