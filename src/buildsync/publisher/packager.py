"""Package a build directory into chunks and a manifest.

This module provides:
- PackageFilters: Which source files are left out of a build
- PackageStats / PackageResult: Outcome of a packaging run
- package_build: Walk, filter, chunk, store and write the manifest

Output layout:
    <output>/chunks/<hash[0:2]>/<hash>     chunk payloads (ChunkStore)
    <output>/files/<path>                  files below the chunking threshold
    <output>/manifest_<build>_<version>.json
    <output>/version.json
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from buildsync.core.checksums import compute_file_checksum
from buildsync.core.chunking import chunk_file
from buildsync.core.config import ChunkerConfig
from buildsync.core.errors import PackagingError, ReadError
from buildsync.core.files import atomic_write_bytes
from buildsync.core.manifest import (
    ChunkRef,
    FileEntry,
    Manifest,
    create_manifest,
    format_bytes,
    save_manifest,
    write_version_pointer,
)
from buildsync.publisher.storage import ChunkStore

logger = logging.getLogger(__name__)

CHUNKS_DIR_NAME = "chunks"
FILES_DIR_NAME = "files"

# (files_done, files_total, relative_path)
PackageProgressCallback = Callable[[int, int, str], None]


def manifest_filename(build_type: str, version: str) -> str:
    """Return the manifest file name written next to the chunks."""
    return f"manifest_{build_type}_{version}.json"


@dataclass
class PackageFilters:
    """Rules for leaving files out of a packaged build.

    Attributes:
        exclude_saved: Skip anything inside a directory named "Saved"
            (case-insensitive); these hold per-user game data.
        exclude_pdb: Skip ``.pdb`` debug symbol files.
        patterns: Extra fnmatch patterns matched against the relative path
            and the file name.
    """

    exclude_saved: bool = True
    exclude_pdb: bool = True
    patterns: list[str] = field(default_factory=list)

    def should_include(self, relative_path: str) -> bool:
        """Check if a slash-separated relative path belongs in the build."""
        lowered = relative_path.lower()
        parts = lowered.split("/")
        name = parts[-1]

        if self.exclude_saved and "saved" in parts[:-1]:
            return False
        if self.exclude_pdb and name.endswith(".pdb"):
            return False

        # Files the launcher itself owns
        if name.startswith("manifest_") and name.endswith(".txt"):
            return False
        if name == "version.json" or "launcher.exe" in name:
            return False

        for pattern in self.patterns:
            if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(parts[-1], pattern):
                return False
        return True


@dataclass
class PackageStats:
    """Counters for a packaging run.

    Attributes:
        files_processed: Files written to the manifest.
        total_chunks: Chunk references across all files.
        unique_chunks: Distinct chunk hashes stored.
        total_size: Sum of file sizes in bytes.
    """

    files_processed: int = 0
    total_chunks: int = 0
    unique_chunks: int = 0
    total_size: int = 0

    @property
    def deduplication_ratio(self) -> float:
        """Unique over total chunk count (1.0 when nothing was chunked)."""
        if self.total_chunks == 0:
            return 1.0
        return self.unique_chunks / self.total_chunks


@dataclass
class PackageResult:
    """Result of package_build."""

    manifest: Manifest
    manifest_path: Path
    version_path: Path
    chunks_dir: Path
    files_dir: Path
    stats: PackageStats


def iter_source_files(
    source_dir: Path,
    filters: PackageFilters,
    skip: Path | None = None,
) -> Iterator[tuple[Path, str]]:
    """Yield (absolute path, relative path) for files to package, sorted.

    Symlinks are never followed. ``skip`` excludes a subtree, used when the
    output directory lives inside the source directory.
    """
    for path in sorted(source_dir.rglob("*"), key=lambda p: p.relative_to(source_dir).as_posix()):
        if path.is_symlink() or not path.is_file():
            continue
        if skip is not None and path.is_relative_to(skip):
            continue
        relative = path.relative_to(source_dir).as_posix()
        if filters.should_include(relative):
            yield path, relative
        else:
            logger.debug(f"Excluded {relative}")


def package_build(
    source_dir: Path,
    output_dir: Path,
    game_id: str,
    version: str,
    build_type: str = "release",
    chunker: ChunkerConfig | None = None,
    filters: PackageFilters | None = None,
    progress_callback: PackageProgressCallback | None = None,
) -> PackageResult:
    """Package a build directory.

    Files of at least ``chunker.min_size`` bytes are split into chunks and
    stored once per distinct hash; smaller files are copied whole.

    Args:
        source_dir: Root of the build to package.
        output_dir: Destination for chunks, files and the manifest.
        game_id: Game identifier recorded in the manifest.
        version: Version label of this build.
        build_type: Build channel (e.g. "release", "beta").
        chunker: Chunk size bounds (defaults to 5/10/20 MB).
        filters: Exclusion rules (defaults to PackageFilters()).
        progress_callback: Called after each file with (done, total, path).

    Returns:
        PackageResult with the manifest and output locations.

    Raises:
        PackagingError: If the source is missing or holds nothing to package.
        ReadError: If a source file cannot be read.
    """
    source_dir = Path(source_dir).resolve()
    output_dir = Path(output_dir).resolve()
    chunker = chunker or ChunkerConfig()
    filters = filters or PackageFilters()

    if not source_dir.is_dir():
        raise PackagingError(f"Source directory not found: {source_dir}")
    if not version:
        raise PackagingError("Version is required")

    skip = output_dir if output_dir.is_relative_to(source_dir) else None
    sources = list(iter_source_files(source_dir, filters, skip=skip))
    if not sources:
        raise PackagingError(f"No files to package in {source_dir}")

    logger.info(f"Packaging {game_id} {build_type} {version}: {len(sources)} files")

    store = ChunkStore(output_dir / CHUNKS_DIR_NAME)
    files_dir = output_dir / FILES_DIR_NAME
    stats = PackageStats()
    unique: set[str] = set()
    entries: list[FileEntry] = []

    for index, (path, relative) in enumerate(sources, start=1):
        try:
            size = path.stat().st_size
        except OSError as e:
            raise ReadError(str(path), str(e)) from e

        if size >= chunker.min_size:
            entry = _package_chunked(path, relative, chunker, store, unique)
            stats.total_chunks += len(entry.chunks or ())
        else:
            entry = _package_whole(path, relative, size, files_dir)

        entries.append(entry)
        stats.files_processed += 1
        stats.total_size += entry.total_size

        if progress_callback:
            progress_callback(index, len(sources), relative)

    stats.unique_chunks = len(unique)

    manifest = create_manifest(version, game_id, build_type, entries)
    manifest_path = output_dir / manifest_filename(build_type, version)
    save_manifest(manifest, manifest_path)
    version_path = write_version_pointer(output_dir, version)

    logger.info(
        f"Packaged {stats.files_processed} files ({format_bytes(stats.total_size)}): "
        f"{stats.total_chunks} chunks, {stats.unique_chunks} unique "
        f"(dedup ratio {stats.deduplication_ratio:.1%})"
    )

    return PackageResult(
        manifest=manifest,
        manifest_path=manifest_path,
        version_path=version_path,
        chunks_dir=store.root,
        files_dir=files_dir,
        stats=stats,
    )


def _package_chunked(
    path: Path,
    relative: str,
    chunker: ChunkerConfig,
    store: ChunkStore,
    unique: set[str],
) -> FileEntry:
    """Chunk a file into the store, hashing the whole file in the same pass."""
    hasher = hashlib.sha256()
    refs: list[ChunkRef] = []

    for chunk in chunk_file(path, chunker):
        hasher.update(chunk.data)
        if chunk.hash not in unique:
            store.put(chunk.hash, chunk.data)
            unique.add(chunk.hash)
        refs.append(ChunkRef(hash=chunk.hash, size=chunk.size, offset=chunk.offset))

    logger.debug(f"Chunked {relative}: {len(refs)} chunks")
    return FileEntry(
        path=relative,
        total_size=sum(r.size for r in refs),
        checksum=hasher.hexdigest(),
        chunks=tuple(refs),
    )


def _package_whole(path: Path, relative: str, size: int, files_dir: Path) -> FileEntry:
    """Copy a small file into the output and checksum it."""
    try:
        data = path.read_bytes()
        checksum = compute_file_checksum(path)
    except OSError as e:
        raise ReadError(str(path), str(e)) from e

    atomic_write_bytes(files_dir.joinpath(*relative.split("/")), data)
    logger.debug(f"Copied {relative} ({format_bytes(size)})")
    return FileEntry(path=relative, total_size=len(data), checksum=checksum)
