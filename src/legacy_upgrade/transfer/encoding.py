"""
Text encodings used to push binary data through a shell.

Chunks are hex encoded because BusyBox printf can turn `\\xHH` escapes back
into raw bytes without any optional applet. Whole-file transfers use base64
since the device decodes them in one command.
"""

from __future__ import annotations

import base64
from collections.abc import Iterator


def total_chunks(size: int, chunk_size: int) -> int:
    """Number of chunks needed for `size` bytes (zero for an empty file)."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return -(-size // chunk_size)


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[bytes]:
    """Yield consecutive `chunk_size` slices of `data`; the last may be short."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    for offset in range(0, len(data), chunk_size):
        yield data[offset : offset + chunk_size]


def hex_encode(chunk: bytes) -> str:
    return chunk.hex()


def hex_decode(text: str) -> bytes:
    return bytes.fromhex(text)


def iter_batches(items: list[str], batch_size: int) -> Iterator[list[str]]:
    """Group encoded chunks into batches sent as one remote command."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    for offset in range(0, len(items), batch_size):
        yield items[offset : offset + batch_size]


def hex_chunks(data: bytes, chunk_size: int) -> list[str]:
    """Hex-encode every chunk of `data`, in order."""
    return [hex_encode(chunk) for chunk in iter_chunks(data, chunk_size)]


def base64_encode(data: bytes) -> bytes:
    """Base64 with line breaks, as BusyBox `base64 -d` expects."""
    return base64.encodebytes(data)
