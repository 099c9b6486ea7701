"""Chunk and object storage.

This module provides:
- ChunkStore: Local content-addressed chunk store (packaging output, client cache)
- ObjectStore: Abstract interface for the remote bucket
- LocalObjectStore for development/testing
- S3ObjectStore for production (AWS, Cloudflare R2, MinIO)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from buildsync.core.config import ObjectStoreConfig
from buildsync.core.files import atomic_write_bytes

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class ChunkNotFoundError(Exception):
    """Raised when a chunk is not found in a ChunkStore."""


class ObjectNotFoundError(Exception):
    """Raised when an object key is not found in remote storage."""


# === Local chunk store ===


class ChunkStore:
    """Content-addressed chunk store on the local filesystem.

    Chunks are stored in subdirectories based on hash prefix
    to avoid too many files in a single directory:
    ``<root>/<hash[0:2]>/<hash>``.

    Writes are atomic (temporary file then rename), so two writers
    storing the same hash at once leave one intact copy.
    """

    def __init__(self, root: Path | str) -> None:
        """Initialize the store.

        Args:
            root: Base directory; created if missing.
        """
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        """Return the store directory."""
        return self._root

    def path_for(self, chunk_hash: str) -> Path:
        """Get the file path for a chunk."""
        return self._root / chunk_hash[:2] / chunk_hash

    def has(self, chunk_hash: str) -> bool:
        """Check if a chunk is stored."""
        return self.path_for(chunk_hash).is_file()

    def put(self, chunk_hash: str, data: bytes) -> bool:
        """Store a chunk unless already present.

        Args:
            chunk_hash: SHA-256 hash of the payload.
            data: Chunk payload.

        Returns:
            True if the chunk was written, False if it already existed.
        """
        path = self.path_for(chunk_hash)
        if path.is_file():
            return False
        atomic_write_bytes(path, data)
        return True

    def get(self, chunk_hash: str) -> bytes:
        """Retrieve a chunk.

        Raises:
            ChunkNotFoundError: If chunk doesn't exist.
        """
        try:
            return self.path_for(chunk_hash).read_bytes()
        except FileNotFoundError as e:
            raise ChunkNotFoundError(f"Chunk not found: {chunk_hash}") from e

    def hashes(self) -> Iterator[str]:
        """Iterate over stored chunk hashes."""
        for shard in sorted(self._root.iterdir()):
            if not shard.is_dir() or len(shard.name) != 2:
                continue
            for path in sorted(shard.iterdir()):
                if path.is_file() and path.name.startswith(shard.name):
                    yield path.name

    def __len__(self) -> int:
        return sum(1 for _ in self.hashes())


# === Remote object store ===


class ObjectStore(ABC):
    """Abstract interface for the remote bucket holding published builds."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of the bucket."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store an object, replacing any previous one.

        Args:
            key: Object key.
            data: Object payload.
            content_type: MIME type recorded with the object.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Retrieve an object.

        Raises:
            ObjectNotFoundError: If the key doesn't exist.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def list_prefixes(self, prefix: str) -> list[str]:
        """List the immediate sub-prefixes ("directories") under a prefix.

        Args:
            prefix: Key prefix ending with "/".

        Returns:
            Sub-prefix names without the parent prefix or trailing "/".
        """

    def check(self) -> None:
        """Verify the store is reachable; raises on failure."""
        self.list_prefixes("")


class LocalObjectStore(ObjectStore):
    """Directory used as a bucket, for development and testing."""

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory standing in for the bucket.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _path(self, key: str) -> Path:
        return self._base_path.joinpath(*key.split("/"))

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store an object."""
        atomic_write_bytes(self._path(key), data)

    def get(self, key: str) -> bytes:
        """Retrieve an object."""
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {key}") from e

    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        return self._path(key).is_file()

    def list_prefixes(self, prefix: str) -> list[str]:
        """List sub-directories under a prefix."""
        directory = self._path(prefix.rstrip("/")) if prefix.strip("/") else self._base_path
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_dir())


class S3ObjectStore(ObjectStore):
    """S3-compatible storage for production (AWS, Cloudflare R2, MinIO, etc.)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for R2, MinIO, etc.).
            access_key: Access key ID.
            secret_key: Secret access key.
            region: Region ("auto" for R2, default: us-east-1).
        """
        import boto3

        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}"
        return f"S3: s3://{self._bucket}"

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store an object."""
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    def get(self, key: str) -> bytes:
        """Retrieve an object."""
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body: bytes = response["Body"].read()
            return body
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(f"Object not found: {key}") from e
            raise

    def exists(self, key: str) -> bool:
        """Check if an object exists.

        Only a 404 means absent; other client errors propagate so that an
        unreachable bucket is not mistaken for a missing object.
        """
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def list_prefixes(self, prefix: str) -> list[str]:
        """List common prefixes one level below a prefix."""
        paginator = self._client.get_paginator("list_objects_v2")
        names: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix, Delimiter="/"):
            for entry in page.get("CommonPrefixes", []):
                names.append(entry["Prefix"][len(prefix):].rstrip("/"))
        return sorted(names)

    def check(self) -> None:
        """Verify the bucket is reachable."""
        self._client.head_bucket(Bucket=self._bucket)


def create_object_store(config: ObjectStoreConfig) -> ObjectStore:
    """Factory function to create the remote store from configuration.

    Args:
        config: Object store configuration:
            - type: "local" or "s3"
            - For local: local_path
            - For S3: bucket, endpoint_url or account_id, access_key, secret_key, region

    Returns:
        Configured ObjectStore instance.

    Raises:
        ValueError: If storage type is unknown or the bucket is missing.
    """
    if config.type == "local":
        return LocalObjectStore(config.local_path or "./bucket")

    if config.type == "s3":
        if not config.bucket:
            raise ValueError("S3 storage requires 'bucket' configuration")
        return S3ObjectStore(
            bucket=config.bucket,
            endpoint_url=config.endpoint_url,
            access_key=config.access_key,
            secret_key=config.secret_key,
            region=config.region or "us-east-1",
        )

    raise ValueError(f"Unknown storage type: {config.type}")
