"""Core module - Shared chunking, checksums, and manifest model."""

from buildsync.core.checksums import compute_file_checksum, compute_file_hash
from buildsync.core.chunking import (
    Chunk,
    chunk_bytes,
    chunk_file,
    chunk_stream,
    get_chunk_hash,
)
from buildsync.core.config import (
    ChunkerConfig,
    DownloadConfig,
    ObjectStoreConfig,
    RetryPolicy,
)
from buildsync.core.errors import (
    BuildSyncError,
    ChecksumMismatch,
    ChunkMissingRemotely,
    MalformedManifest,
    PackagingError,
    ReadError,
    TransferError,
)
from buildsync.core.manifest import (
    ChunkRef,
    FileEntry,
    Manifest,
    ManifestDiff,
    diff_manifests,
    parse_manifest,
    read_version_pointer,
    validate_manifest,
    write_version_pointer,
)
from buildsync.core.types import FileChange, SessionStatus

__all__ = [
    # Checksums
    "compute_file_checksum",
    "compute_file_hash",
    # Chunking
    "Chunk",
    "chunk_bytes",
    "chunk_file",
    "chunk_stream",
    "get_chunk_hash",
    # Config
    "ChunkerConfig",
    "DownloadConfig",
    "ObjectStoreConfig",
    "RetryPolicy",
    # Errors
    "BuildSyncError",
    "ChecksumMismatch",
    "ChunkMissingRemotely",
    "MalformedManifest",
    "PackagingError",
    "ReadError",
    "TransferError",
    # Manifest
    "ChunkRef",
    "FileEntry",
    "Manifest",
    "ManifestDiff",
    "diff_manifests",
    "parse_manifest",
    "read_version_pointer",
    "validate_manifest",
    "write_version_pointer",
    # Types
    "FileChange",
    "SessionStatus",
]
