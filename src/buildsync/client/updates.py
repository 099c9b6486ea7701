"""Update check against a local install.

This module provides:
- UpdateCheck: Which files of a manifest the install is missing or has stale
- check_for_updates: Compare an install with a manifest
- get_local_version: Installed version from the version pointer
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from buildsync.core.checksums import compute_file_checksum, compute_file_hash
from buildsync.core.manifest import (
    VERSION_FILE_NAME,
    FileEntry,
    Manifest,
    read_version_pointer,
)

logger = logging.getLogger(__name__)


@dataclass
class UpdateCheck:
    """Result of check_for_updates.

    Attributes:
        latest_version: Version of the manifest checked against.
        local_version: Version recorded in the install ("0.0.0" if none).
        files_to_update: Entries that must be downloaded.
    """

    latest_version: str
    local_version: str
    files_to_update: list[FileEntry] = field(default_factory=list)

    @property
    def is_update_available(self) -> bool:
        """True if any file needs downloading."""
        return bool(self.files_to_update)

    @property
    def bytes_to_download(self) -> int:
        """Total size of the files to update."""
        return sum(f.total_size for f in self.files_to_update)


def get_local_version(install_path: Path) -> str:
    """Return the installed version, or "0.0.0" when unknown."""
    return read_version_pointer(Path(install_path))


def _needs_update(entry: FileEntry, local_path: Path) -> bool:
    if not local_path.is_file():
        return True
    try:
        if entry.is_chunked:
            # Chunked files carry a raw digest of their bytes
            if local_path.stat().st_size != entry.total_size:
                return True
            return bool(entry.checksum) and compute_file_hash(local_path) != entry.checksum
        if entry.checksum:
            return compute_file_checksum(local_path, name=entry.path) != entry.checksum
        return local_path.stat().st_size != entry.total_size
    except OSError as e:
        logger.warning(f"Cannot verify {local_path}: {e}")
        return True


def check_for_updates(manifest: Manifest, install_path: Path) -> UpdateCheck:
    """Compare an install directory with a manifest.

    A file needs updating when it is absent locally or its checksum
    differs (text-like files are compared after normalization). Entries
    without a checksum fall back to a size comparison. The version
    pointer file itself is never downloaded.

    Args:
        manifest: Manifest of the latest build.
        install_path: Install root (may not exist yet).

    Returns:
        UpdateCheck listing the files to download.
    """
    install_path = Path(install_path)
    result = UpdateCheck(
        latest_version=manifest.version,
        local_version=get_local_version(install_path),
    )

    files = [f for f in manifest.files if f.path != VERSION_FILE_NAME]
    if not install_path.is_dir():
        result.files_to_update = files
    else:
        result.files_to_update = [
            f for f in files if _needs_update(f, install_path.joinpath(*f.path.split("/")))
        ]

    logger.info(
        f"Update check: {len(result.files_to_update)}/{len(files)} files to download "
        f"(local {result.local_version}, latest {result.latest_version})"
    )
    return result
