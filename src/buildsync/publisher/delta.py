"""Delta detection between two manifest versions.

This module provides:
- DeltaResult: Per-path classification plus the units to upload
- detect_delta: Compare an old and a new manifest
- should_use_delta: Decide whether a delta upload is worthwhile
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from buildsync.core.manifest import ChunkRef, FileEntry, Manifest, format_bytes
from buildsync.core.types import FileChange

logger = logging.getLogger(__name__)

DEFAULT_DELTA_THRESHOLD = 0.10


@dataclass
class DeltaResult:
    """Outcome of comparing two manifests.

    Every path of either manifest appears in exactly one of the four
    file lists.

    Attributes:
        old_version: Version of the old manifest.
        new_version: Version of the new manifest.
        new_files: Entries only in the new manifest.
        changed_files: Entries in both whose content differs.
        unchanged_files: Entries in both with identical content.
        deleted_files: Entries only in the old manifest.
        chunks_to_upload: Chunks of new/changed files absent from the old
            manifest, deduplicated, in first-occurrence order.
        files_to_upload: Non-chunked entries among new/changed files.
        total_new_bytes: Bytes of every chunk reference plus every whole
            file in the new manifest.
        total_unique_chunks: Distinct chunk hashes in the new manifest.
    """

    old_version: str
    new_version: str
    new_files: list[FileEntry] = field(default_factory=list)
    changed_files: list[FileEntry] = field(default_factory=list)
    unchanged_files: list[FileEntry] = field(default_factory=list)
    deleted_files: list[FileEntry] = field(default_factory=list)
    chunks_to_upload: list[ChunkRef] = field(default_factory=list)
    files_to_upload: list[FileEntry] = field(default_factory=list)
    total_new_bytes: int = 0
    total_unique_chunks: int = 0

    @property
    def upload_bytes(self) -> int:
        """Bytes that must be transferred for this delta."""
        return sum(c.size for c in self.chunks_to_upload) + sum(
            f.total_size for f in self.files_to_upload
        )

    @property
    def savings_ratio(self) -> float:
        """Fraction of the new build's bytes that need not be uploaded."""
        if self.total_new_bytes <= 0:
            return 0.0
        return 1 - self.upload_bytes / self.total_new_bytes

    @property
    def chunks_reused(self) -> int:
        """Distinct chunks of the new manifest already present in the old one."""
        return self.total_unique_chunks - len(self.chunks_to_upload)

    def change_for(self, path: str) -> FileChange | None:
        """Return how a path changed, or None if it is in neither manifest."""
        for change, entries in (
            (FileChange.NEW, self.new_files),
            (FileChange.CHANGED, self.changed_files),
            (FileChange.UNCHANGED, self.unchanged_files),
            (FileChange.DELETED, self.deleted_files),
        ):
            if any(entry.path == path for entry in entries):
                return change
        return None

    def __str__(self) -> str:
        """Human-readable summary of the delta."""
        return (
            f"Delta {self.old_version} -> {self.new_version}: "
            f"{len(self.new_files)} new, {len(self.changed_files)} changed, "
            f"{len(self.unchanged_files)} unchanged, {len(self.deleted_files)} deleted; "
            f"{len(self.chunks_to_upload)} chunks + {len(self.files_to_upload)} files to upload "
            f"({format_bytes(self.upload_bytes)}, {self.savings_ratio:.1%} saved)"
        )


def _has_changed(old: FileEntry, new: FileEntry) -> bool:
    if old.is_chunked != new.is_chunked:
        return True
    if not new.is_chunked:
        return old.checksum != new.checksum or old.total_size != new.total_size
    # Same hash set and count; a reordering of identical chunks is not a change
    old_hashes = old.chunk_hashes
    new_hashes = new.chunk_hashes
    return len(old_hashes) != len(new_hashes) or set(old_hashes) != set(new_hashes)


def detect_delta(old: Manifest, new: Manifest) -> DeltaResult:
    """Compare two manifests.

    Args:
        old: Previously published manifest.
        new: Manifest about to be published.

    Returns:
        DeltaResult with per-path classification and upload lists.
    """
    result = DeltaResult(old_version=old.version, new_version=new.version)
    old_files = old.files_by_path
    old_hashes = old.chunk_hashes()

    for entry in new.files:
        previous = old_files.get(entry.path)
        if previous is None:
            result.new_files.append(entry)
        elif _has_changed(previous, entry):
            result.changed_files.append(entry)
        else:
            result.unchanged_files.append(entry)

    new_paths = new.files_by_path
    result.deleted_files = [f for f in old.files if f.path not in new_paths]

    queued: set[str] = set()
    for entry in [*result.new_files, *result.changed_files]:
        if not entry.is_chunked:
            result.files_to_upload.append(entry)
            continue
        for chunk in entry.chunks or ():
            if chunk.hash not in old_hashes and chunk.hash not in queued:
                queued.add(chunk.hash)
                result.chunks_to_upload.append(chunk)

    result.total_new_bytes = sum(c.size for c in new.all_chunks()) + sum(
        f.total_size for f in new.files if not f.is_chunked
    )
    result.total_unique_chunks = len(new.chunk_hashes())

    logger.debug(str(result))
    return result


def should_use_delta(
    old: Manifest | None,
    new: Manifest,
    threshold: float = DEFAULT_DELTA_THRESHOLD,
) -> bool:
    """Check whether a delta upload saves more than ``threshold`` of the bytes."""
    if old is None:
        return False
    return detect_delta(old, new).savings_ratio > threshold
