"""Content-Defined Chunking (CDC) for buildsync.

This module provides gear-hash CDC for:
- Cross-version and cross-file deduplication
- Stable chunk boundaries (insertions don't affect distant chunks)
- Configurable chunk sizes (default min 5MB, avg 10MB, max 20MB)

Boundary rule: at position ``p`` (bytes consumed since the chunk start,
current byte included) a cut is placed when ``p >= min_size`` and either
``p >= max_size`` or ``hash & mask == 0``. The gear table is generated from
a fixed seed so boundaries are identical across machines and builds.
"""

from __future__ import annotations

import hashlib
import io
from collections.abc import Iterator
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import BinaryIO

from buildsync.core.config import ChunkerConfig
from buildsync.core.errors import ReadError

GEAR_SEED = 0x6275696C6473796E
READ_SIZE = 1024 * 1024  # 1 MB

_MASK64 = 0xFFFFFFFFFFFFFFFF
# A 64-bit gear hash shifts every byte out after 64 steps
_WINDOW = 64


def _splitmix64(seed: int) -> Iterator[int]:
    """Yield the SplitMix64 sequence for a seed."""
    state = seed
    while True:
        state = (state + 0x9E3779B97F4A7C15) & _MASK64
        z = state
        z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & _MASK64
        z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & _MASK64
        yield z ^ (z >> 31)


GEAR: tuple[int, ...] = tuple(islice(_splitmix64(GEAR_SEED), 256))


@dataclass(frozen=True)
class Chunk:
    """Represents a chunk of data with metadata."""

    index: int
    offset: int
    data: bytes
    hash: str

    @property
    def size(self) -> int:
        """Return the size of this chunk in bytes."""
        return len(self.data)


def get_chunk_hash(data: bytes) -> str:
    """Compute SHA-256 hash of data.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded SHA-256 hash string (64 characters).
    """
    return hashlib.sha256(data).hexdigest()


def find_boundary(data: bytes | bytearray, config: ChunkerConfig) -> int:
    """Find the length of the next chunk at the start of data.

    Args:
        data: Buffered bytes starting at a chunk start. Must hold at least
            ``max_size`` bytes unless the stream is exhausted.
        config: Chunk size bounds.

    Returns:
        Number of bytes that form the next chunk.
    """
    length = len(data)
    min_size = config.min_size
    if length <= min_size:
        return length

    limit = min(length, config.max_size)
    mask = config.mask
    gear = GEAR
    h = 0

    # Warm the hash over the window that still influences position min_size
    for i in range(max(0, min_size - _WINDOW), min_size - 1):
        h = ((h << 1) + gear[data[i]]) & _MASK64

    for i in range(min_size - 1, limit):
        h = ((h << 1) + gear[data[i]]) & _MASK64
        if not h & mask:
            return i + 1

    # Forced cut at max_size, or the final remainder
    return limit


def _read_block(stream: BinaryIO, size: int, name: str) -> bytes:
    try:
        return stream.read(size)
    except OSError as e:
        raise ReadError(name, str(e)) from e


def chunk_stream(
    stream: BinaryIO,
    config: ChunkerConfig | None = None,
    name: str = "<stream>",
) -> Iterator[Chunk]:
    """Split a binary stream into content-defined chunks.

    Single forward pass; the iterator cannot be restarted.

    Args:
        stream: Readable binary stream.
        config: Chunk size bounds (defaults to ChunkerConfig()).
        name: Name used in error messages.

    Yields:
        Chunk objects with index, offset, data, and hash.

    Raises:
        ReadError: If reading the stream fails.
    """
    config = config or ChunkerConfig()
    buffer = bytearray()
    offset = 0
    index = 0
    eof = False

    while True:
        while not eof and len(buffer) < config.max_size:
            block = _read_block(stream, max(READ_SIZE, config.max_size - len(buffer)), name)
            if block:
                buffer += block
            else:
                eof = True

        if not buffer:
            return

        cut = find_boundary(buffer, config)
        data = bytes(buffer[:cut])
        del buffer[:cut]

        yield Chunk(
            index=index,
            offset=offset,
            data=data,
            hash=get_chunk_hash(data),
        )
        offset += cut
        index += 1


def chunk_bytes(data: bytes, config: ChunkerConfig | None = None) -> Iterator[Chunk]:
    """Split in-memory data into content-defined chunks.

    Args:
        data: Raw bytes to chunk.
        config: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and hash.
    """
    yield from chunk_stream(io.BytesIO(data), config)


def chunk_file(path: Path, config: ChunkerConfig | None = None) -> Iterator[Chunk]:
    """Split a file into content-defined chunks.

    The file is streamed; at most ``max_size`` plus one read block is
    buffered at a time.

    Args:
        path: Path to the file to chunk.
        config: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and hash.

    Raises:
        ReadError: If the file cannot be opened or read.
    """
    path = Path(path)
    try:
        f = open(path, "rb")
    except OSError as e:
        raise ReadError(str(path), str(e)) from e

    with f:
        yield from chunk_stream(f, config, name=str(path))
