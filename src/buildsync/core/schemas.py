"""Pydantic schemas for the manifest JSON wire format.

Both manifest shapes are accepted:
- legacy flat: files carry ``path``, ``checksum`` and a per-file ``url``
- chunked: files carry ``filename``/``path``, ``totalSize`` and ``chunks``

Synonyms: path/filename, totalSize/size, gameId/gameName,
buildType/channel, baseLocator/baseUrl.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# === Chunk / file schemas ===


class ChunkRefSchema(BaseModel):
    """A chunk reference inside a file entry."""

    model_config = ConfigDict(extra="ignore")

    hash: str = Field(min_length=1)
    size: int = Field(ge=0)
    offset: int = Field(ge=0)
    url: str | None = None


class FileEntrySchema(BaseModel):
    """A file entry, chunked or whole."""

    model_config = ConfigDict(extra="ignore")

    path: str = Field(min_length=1, validation_alias=AliasChoices("path", "filename"))
    total_size: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("totalSize", "size")
    )
    checksum: str | None = None
    url: str | None = None
    chunks: list[ChunkRefSchema] | None = None


# === Manifest schema ===


class ManifestSchema(BaseModel):
    """Top-level manifest document."""

    model_config = ConfigDict(extra="ignore")

    version: str = Field(min_length=1)
    game_id: str = Field(default="", validation_alias=AliasChoices("gameId", "gameName"))
    build_type: str = Field(
        default="release", validation_alias=AliasChoices("buildType", "channel")
    )
    generated_at: datetime | None = Field(default=None, validation_alias="generatedAt")
    base_url: str | None = Field(
        default=None, validation_alias=AliasChoices("baseLocator", "baseUrl")
    )
    files: list[FileEntrySchema]

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        """Accept numeric versions such as 2 or 1.5."""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class VersionPointerSchema(BaseModel):
    """Contents of a version.json pointer file."""

    version: str = Field(min_length=1)
