"""Manifest model for versioned builds.

This module provides:
- ChunkRef, FileEntry, Manifest: Immutable manifest model
- parse_manifest / load_manifest / save_manifest: JSON wire format
- validate_manifest: Invariant checks (raises MalformedManifest)
- diff_manifests: Whole-file checksum diff between two manifests
- read_version_pointer / write_version_pointer: version.json at an install root
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import cached_property
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from buildsync.core.errors import MalformedManifest
from buildsync.core.files import atomic_write_bytes
from buildsync.core.schemas import FileEntrySchema, ManifestSchema, VersionPointerSchema

logger = logging.getLogger(__name__)

VERSION_FILE_NAME = "version.json"
DEFAULT_LOCAL_VERSION = "0.0.0"

MANIFEST_TYPE_CHUNKED = "chunk-based"
MANIFEST_TYPE_FILES = "file-based"


def normalize_path(path: str) -> str:
    """Normalize a relative path to forward slashes without leading ./ or /."""
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


@dataclass(frozen=True)
class ChunkRef:
    """Reference to a chunk within a file.

    Attributes:
        hash: SHA-256 of the chunk payload.
        size: Payload size in bytes.
        offset: Position of the chunk within its file.
        url: Remote locator (object key or absolute URL), set on publish.
    """

    hash: str
    size: int
    offset: int
    url: str | None = None


@dataclass(frozen=True)
class FileEntry:
    """A file in a build.

    A file either has an ordered chunk list or is transferred as a single
    unit identified by its checksum (``chunks is None``).
    """

    path: str
    total_size: int
    checksum: str | None = None
    chunks: tuple[ChunkRef, ...] | None = None
    url: str | None = None

    @property
    def is_chunked(self) -> bool:
        """True when the file is transferred as chunks."""
        return self.chunks is not None

    @property
    def chunk_hashes(self) -> list[str]:
        """Chunk hashes in offset order (empty for whole files)."""
        return [c.hash for c in self.chunks or ()]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON wire shape."""
        data: dict[str, Any] = {"path": self.path, "totalSize": self.total_size}
        if self.checksum is not None:
            data["checksum"] = self.checksum
        if self.url is not None:
            data["url"] = self.url
        if self.chunks is not None:
            data["chunks"] = [_chunk_to_dict(c) for c in self.chunks]
        return data

    @classmethod
    def from_schema(cls, schema: FileEntrySchema) -> FileEntry:
        """Create from a validated wire schema."""
        chunks = None
        if schema.chunks is not None:
            chunks = tuple(
                sorted(
                    (ChunkRef(c.hash, c.size, c.offset, c.url) for c in schema.chunks),
                    key=lambda c: c.offset,
                )
            )
        return cls(
            path=normalize_path(schema.path),
            total_size=schema.total_size,
            checksum=schema.checksum,
            chunks=chunks,
            url=schema.url,
        )


def _chunk_to_dict(chunk: ChunkRef) -> dict[str, Any]:
    data: dict[str, Any] = {"hash": chunk.hash, "size": chunk.size, "offset": chunk.offset}
    if chunk.url is not None:
        data["url"] = chunk.url
    return data


@dataclass(frozen=True)
class Manifest:
    """Versioned catalog of the files that make up one build."""

    version: str
    files: tuple[FileEntry, ...] = field(default_factory=tuple)
    game_id: str = ""
    build_type: str = "release"
    generated_at: datetime | None = None
    base_url: str | None = None

    @cached_property
    def files_by_path(self) -> dict[str, FileEntry]:
        """Map of path to entry."""
        return {f.path: f for f in self.files}

    def get_file(self, path: str) -> FileEntry | None:
        """Get an entry by path."""
        return self.files_by_path.get(normalize_path(path))

    @property
    def manifest_type(self) -> str:
        """Return "chunk-based" if any file carries chunks, else "file-based"."""
        if any(f.is_chunked for f in self.files):
            return MANIFEST_TYPE_CHUNKED
        return MANIFEST_TYPE_FILES

    @property
    def total_size(self) -> int:
        """Sum of all file sizes."""
        return sum(f.total_size for f in self.files)

    def all_chunks(self) -> list[ChunkRef]:
        """All chunk references, duplicates included."""
        return [c for f in self.files for c in f.chunks or ()]

    def unique_chunks(self) -> list[ChunkRef]:
        """Chunk references deduplicated by hash, first occurrence kept."""
        seen: set[str] = set()
        unique = []
        for chunk in self.all_chunks():
            if chunk.hash not in seen:
                seen.add(chunk.hash)
                unique.append(chunk)
        return unique

    def chunk_hashes(self) -> set[str]:
        """Set of every chunk hash referenced by the manifest."""
        return {c.hash for c in self.all_chunks()}

    def with_files(self, files: Iterable[FileEntry]) -> Manifest:
        """Return a copy with a different file list."""
        return replace(self, files=tuple(files))

    def with_locators(
        self,
        chunk_locator: Callable[[ChunkRef], str],
        file_locator: Callable[[FileEntry], str],
        base_url: str | None = None,
    ) -> Manifest:
        """Return a copy where every chunk and whole file carries a locator.

        Args:
            chunk_locator: Returns the locator for a chunk reference.
            file_locator: Returns the locator for a non-chunked entry.
            base_url: Replaces the manifest base URL when given.
        """
        files = []
        for entry in self.files:
            if entry.chunks is None:
                files.append(replace(entry, url=file_locator(entry)))
            else:
                chunks = tuple(replace(c, url=chunk_locator(c)) for c in entry.chunks)
                files.append(replace(entry, chunks=chunks))
        return replace(
            self,
            files=tuple(files),
            base_url=base_url if base_url is not None else self.base_url,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON wire shape."""
        data: dict[str, Any] = {
            "version": self.version,
            "gameId": self.game_id,
            "buildType": self.build_type,
            "manifestType": self.manifest_type,
        }
        if self.generated_at is not None:
            data["generatedAt"] = self.generated_at.isoformat()
        if self.base_url is not None:
            data["baseUrl"] = self.base_url
        data["files"] = [f.to_dict() for f in self.files]
        return data

    def to_json(self) -> str:
        """Serialize to indented JSON."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_schema(cls, schema: ManifestSchema) -> Manifest:
        """Create from a validated wire schema."""
        return cls(
            version=schema.version,
            files=tuple(FileEntry.from_schema(f) for f in schema.files),
            game_id=schema.game_id,
            build_type=schema.build_type,
            generated_at=schema.generated_at,
            base_url=schema.base_url.rstrip("/") if schema.base_url else None,
        )


def create_manifest(
    version: str,
    game_id: str,
    build_type: str,
    files: Iterable[FileEntry],
    base_url: str | None = None,
) -> Manifest:
    """Create a manifest stamped with the current UTC time."""
    return Manifest(
        version=version,
        files=tuple(files),
        game_id=game_id,
        build_type=build_type,
        generated_at=datetime.now(timezone.utc),
        base_url=base_url,
    )


def validate_manifest(
    manifest: Manifest,
    require_chunks: bool = False,
    require_urls: bool = False,
) -> None:
    """Check manifest invariants.

    Args:
        manifest: Manifest to check.
        require_chunks: Every file must carry a chunk list.
        require_urls: Every chunk reference must carry a remote locator.

    Raises:
        MalformedManifest: On the first violated invariant.
    """
    if not manifest.version:
        raise MalformedManifest("Manifest missing version")

    seen: set[str] = set()
    for index, entry in enumerate(manifest.files):
        if not entry.path:
            raise MalformedManifest(f"File at index {index} missing path")
        if entry.path in seen:
            raise MalformedManifest(f"Duplicate file path: {entry.path}")
        seen.add(entry.path)

        if entry.chunks is None:
            if require_chunks:
                raise MalformedManifest(f"File {entry.path} missing chunks array")
            if not entry.checksum:
                raise MalformedManifest(f"File {entry.path} has neither chunks nor checksum")
            continue

        expected_offset = 0
        for chunk in entry.chunks:
            if not chunk.hash:
                raise MalformedManifest(f"Chunk missing hash in file {entry.path}")
            if chunk.size < 0 or chunk.offset < 0:
                raise MalformedManifest(f"Chunk with negative size/offset in file {entry.path}")
            if require_urls and not chunk.url:
                raise MalformedManifest(f"Chunk missing url in file {entry.path}")
            if chunk.offset != expected_offset:
                raise MalformedManifest(
                    f"Chunks of {entry.path} leave a gap or overlap at offset {chunk.offset}"
                )
            expected_offset += chunk.size

        if expected_offset != entry.total_size:
            raise MalformedManifest(
                f"Chunks of {entry.path} cover {expected_offset} bytes, "
                f"totalSize is {entry.total_size}"
            )


def parse_manifest(data: str | bytes | dict[str, Any]) -> Manifest:
    """Parse and validate a manifest document.

    Args:
        data: JSON text/bytes or an already decoded object.

    Returns:
        Validated Manifest.

    Raises:
        MalformedManifest: If the document is not a valid manifest.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise MalformedManifest(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedManifest("Manifest must be a JSON object")

    try:
        schema = ManifestSchema.model_validate(data)
    except ValidationError as e:
        raise MalformedManifest(str(e)) from e

    manifest = Manifest.from_schema(schema)
    validate_manifest(manifest)
    return manifest


def load_manifest(path: Path) -> Manifest:
    """Read and parse a manifest file."""
    return parse_manifest(Path(path).read_bytes())


def save_manifest(manifest: Manifest, path: Path) -> None:
    """Write a manifest file atomically."""
    atomic_write_bytes(Path(path), manifest.to_json().encode("utf-8"))


# === Whole-file diff ===


@dataclass
class ManifestDiff:
    """Whole-file difference between two manifests.

    Attributes:
        added: Entries only in the new manifest.
        modified: Entries in both whose checksum differs.
        removed: Entries only in the old manifest.
    """

    added: list[FileEntry] = field(default_factory=list)
    modified: list[FileEntry] = field(default_factory=list)
    removed: list[FileEntry] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        """Number of added, modified and removed entries."""
        return len(self.added) + len(self.modified) + len(self.removed)

    def __str__(self) -> str:
        """Human-readable summary of diff."""
        return (
            f"ManifestDiff: {len(self.added)} added, "
            f"{len(self.modified)} modified, {len(self.removed)} removed"
        )


def diff_manifests(old: Manifest, new: Manifest) -> ManifestDiff:
    """Compare two manifests by whole-file checksum.

    Coarser than the chunk-level delta; used when no chunk data exists.
    """
    diff = ManifestDiff()
    old_files = old.files_by_path
    new_files = new.files_by_path

    for path, new_file in new_files.items():
        old_file = old_files.get(path)
        if old_file is None:
            diff.added.append(new_file)
        elif old_file.checksum != new_file.checksum:
            diff.modified.append(new_file)

    for path, old_file in old_files.items():
        if path not in new_files:
            diff.removed.append(old_file)

    return diff


# === Version pointer ===


def read_version_pointer(root: Path) -> str:
    """Read the installed version from ``root/version.json``.

    Returns:
        The recorded version, or "0.0.0" when there is no usable pointer.
    """
    version_file = Path(root) / VERSION_FILE_NAME
    try:
        pointer = VersionPointerSchema.model_validate_json(version_file.read_bytes())
    except FileNotFoundError:
        return DEFAULT_LOCAL_VERSION
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable version pointer {version_file}: {e}")
        return DEFAULT_LOCAL_VERSION
    return pointer.version


def write_version_pointer(root: Path, version: str) -> Path:
    """Atomically write ``root/version.json``.

    Returns:
        Path of the written pointer file.
    """
    version_file = Path(root) / VERSION_FILE_NAME
    atomic_write_bytes(version_file, version_pointer_bytes(version))
    return version_file


def version_pointer_bytes(version: str) -> bytes:
    """Serialize a version pointer document."""
    return json.dumps({"version": version}, indent=2).encode("utf-8")


def format_bytes(size: int) -> str:
    """Format bytes to a human-readable string."""
    if size >= 1024**3:
        return f"{size / 1024**3:.2f} GB"
    if size >= 1024**2:
        return f"{size / 1024**2:.2f} MB"
    if size >= 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size} B"
