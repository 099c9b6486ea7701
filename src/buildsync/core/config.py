"""Shared configuration classes for buildsync.

This module defines configuration classes used by the packaging tool,
the upload pipeline and the download client.
"""

from __future__ import annotations

from dataclasses import dataclass

# Chunk size defaults (in bytes)
DEFAULT_MIN_CHUNK_SIZE = 5 * 1024 * 1024    # 5 MB
DEFAULT_AVG_CHUNK_SIZE = 10 * 1024 * 1024   # 10 MB
DEFAULT_MAX_CHUNK_SIZE = 20 * 1024 * 1024   # 20 MB


@dataclass(frozen=True)
class ChunkerConfig:
    """Size bounds for content-defined chunking.

    Attributes:
        min_size: No boundary is placed before this many bytes.
        avg_size: Target chunk size; determines the boundary mask.
        max_size: A boundary is forced at this many bytes.
    """

    min_size: int = DEFAULT_MIN_CHUNK_SIZE
    avg_size: int = DEFAULT_AVG_CHUNK_SIZE
    max_size: int = DEFAULT_MAX_CHUNK_SIZE

    def __post_init__(self) -> None:
        """Check that 0 < min_size < avg_size < max_size."""
        if not 0 < self.min_size < self.avg_size < self.max_size:
            raise ValueError(
                "Chunk sizes must satisfy 0 < min_size < avg_size < max_size "
                f"(got {self.min_size}, {self.avg_size}, {self.max_size})"
            )

    @property
    def mask(self) -> int:
        """Boundary mask: 2**floor(log2(avg_size)) - 1."""
        return (1 << (self.avg_size.bit_length() - 1)) - 1


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    After failed attempt ``n`` (1-based) the caller waits
    ``backoff_base ** n`` seconds before trying again.
    """

    max_attempts: int = 3
    backoff_base: float = 2.0

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return float(self.backoff_base**attempt)


@dataclass
class ObjectStoreConfig:
    """Configuration for the remote object store.

    Attributes:
        type: "s3" for S3-compatible buckets (AWS, R2, MinIO) or "local".
        bucket: Bucket name (s3 only).
        endpoint_url: Custom endpoint URL (s3 only).
        account_id: Cloudflare account id; builds the R2 endpoint when
            endpoint_url is not set.
        access_key: Access key ID.
        secret_key: Secret access key.
        region: Region name ("auto" for R2).
        local_path: Root directory used as the bucket (local only).
    """

    type: str = "local"
    bucket: str | None = None
    endpoint_url: str | None = None
    account_id: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "us-east-1"
    local_path: str | None = None

    def __post_init__(self) -> None:
        """Derive the R2 endpoint from the account id."""
        if self.endpoint_url is None and self.account_id:
            self.endpoint_url = f"https://{self.account_id}.r2.cloudflarestorage.com"
            if self.region == "us-east-1":
                self.region = "auto"


@dataclass
class DownloadConfig:
    """Tunables for the download session.

    Attributes:
        max_attempts: Attempts per file before the session errors out.
        pause_poll_interval: Seconds between cancel checks while paused.
        speed_sample_interval: Seconds between throughput samples.
        timeout: HTTP timeout in seconds.
        stream_block_size: Bytes per read when streaming whole files.
    """

    max_attempts: int = 3
    pause_poll_interval: float = 0.5
    speed_sample_interval: float = 0.25
    timeout: float = 30.0
    stream_block_size: int = 64 * 1024
