"""Error taxonomy shared by the packaging and client sides.

This module provides:
- BuildSyncError: Base exception
- ReadError: Source file unreadable while chunking
- MalformedManifest: Manifest failed schema or invariant checks
- ChunkMissingRemotely: A referenced chunk could not be resolved remotely
- ChecksumMismatch: Downloaded content failed verification
- TransferError: Network-level failure during upload or download
- PackagingError: Packaging run could not produce a manifest
- TransferCancelled / TransferPaused: Internal control flow, never surfaced
"""

from __future__ import annotations


class BuildSyncError(Exception):
    """Base exception for buildsync errors."""


class ReadError(BuildSyncError):
    """A source file could not be read during chunking."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot read {path}: {reason}")


class MalformedManifest(BuildSyncError):
    """Manifest violates the schema or its invariants."""


class ChunkMissingRemotely(BuildSyncError):
    """A chunk referenced by the manifest is not available remotely."""

    def __init__(self, chunk_hash: str, url: str) -> None:
        self.chunk_hash = chunk_hash
        self.url = url
        super().__init__(f"Chunk {chunk_hash} not found at {url}")


class ChecksumMismatch(BuildSyncError):
    """Content did not match its expected digest or size.

    Attributes:
        path: File (or chunk) that failed verification.
        expected: Expected checksum or size.
        actual: Computed checksum or size.
    """

    def __init__(self, path: str, expected: str | int, actual: str | int | None) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Verification failed for {path}: expected {expected}, got {actual}"
        )


class TransferError(BuildSyncError):
    """Network-level failure while moving bytes."""


class PackagingError(BuildSyncError):
    """Packaging run cannot proceed."""


class TransferCancelled(Exception):
    """Raised inside a transfer when cancellation was requested."""


class TransferPaused(Exception):
    """Raised inside a transfer when a pause was requested."""
