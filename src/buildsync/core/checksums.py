"""Whole-file checksums.

Text-like files are hashed after normalization (outer whitespace trimmed,
CRLF converted to LF) so that newline-convention differences between the
packaging machine and an install do not register as changes.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

TEXT_EXTENSIONS = frozenset({".txt", ".ini", ".json"})

HASH_BLOCK_SIZE = 256 * 1024


def is_text_path(path: str | Path) -> bool:
    """Check whether a path gets text normalization before hashing."""
    return Path(path).suffix.lower() in TEXT_EXTENSIONS


def normalize_text(data: bytes) -> bytes:
    """Trim outer whitespace and canonicalize line endings."""
    text = data.decode("utf-8", errors="surrogateescape")
    # Leading BOM counts as outer whitespace
    text = text.strip().lstrip("\ufeff").strip().replace("\r\n", "\n")
    return text.encode("utf-8", errors="surrogateescape")


def compute_file_hash(path: Path) -> str:
    """Compute the raw SHA-256 hash of a file.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


def compute_file_checksum(path: Path, name: str | Path | None = None) -> str:
    """Compute the manifest checksum of a file.

    Args:
        path: File to hash.
        name: Path whose extension decides normalization (defaults to
            ``path``). Lets a ``.part`` file be checked as its final name.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    if is_text_path(name if name is not None else path):
        return hashlib.sha256(normalize_text(Path(path).read_bytes())).hexdigest()
    return compute_file_hash(path)
