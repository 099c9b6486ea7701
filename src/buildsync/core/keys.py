"""Remote object key scheme.

Layout inside the bucket:
    {game}/{build}/{version}/chunks/{hash[0:2]}/{hash}
    {game}/{build}/{version}/files/{path}
    {game}/{build}/{version}/manifest.json
    {game}/{build}/{version}/version.json
    {game}/{build}/{game_lower}_manifest.json   (latest alias)
"""

from __future__ import annotations

from collections.abc import Callable

# (game_id, build_type, version, chunk_hash) -> key
KeyNamer = Callable[[str, str, str, str], str]


def version_prefix(game_id: str, build_type: str, version: str) -> str:
    """Return the key prefix holding one published version."""
    return f"{game_id}/{build_type}/{version}"


def chunk_key(game_id: str, build_type: str, version: str, chunk_hash: str) -> str:
    """Return the key of a chunk payload."""
    prefix = version_prefix(game_id, build_type, version)
    return f"{prefix}/chunks/{chunk_hash[:2]}/{chunk_hash}"


def file_key(game_id: str, build_type: str, version: str, path: str) -> str:
    """Return the key of a non-chunked file payload."""
    return f"{version_prefix(game_id, build_type, version)}/files/{path}"


def manifest_key(game_id: str, build_type: str, version: str) -> str:
    """Return the key of a versioned manifest."""
    return f"{version_prefix(game_id, build_type, version)}/manifest.json"


def version_file_key(game_id: str, build_type: str, version: str) -> str:
    """Return the key of a version pointer file."""
    return f"{version_prefix(game_id, build_type, version)}/version.json"


def latest_manifest_key(game_id: str, build_type: str) -> str:
    """Return the key of the "latest" manifest alias."""
    return f"{game_id}/{build_type}/{game_id.lower()}_manifest.json"
