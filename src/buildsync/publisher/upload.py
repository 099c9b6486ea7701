"""Upload packaged builds to the remote object store.

This module provides:
- UploadOrchestrator: Skip-if-present chunk/file upload with retry, pause and cancel
- UploadStats / UploadProgress: Counters and progress snapshots
- Publishing: versioned manifest, version pointer and the "latest" alias
- Version management: fetch, list (newest first) and promote published versions
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from buildsync.core.config import RetryPolicy
from buildsync.core.errors import TransferError
from buildsync.core.keys import (
    KeyNamer,
    chunk_key,
    file_key,
    latest_manifest_key,
    manifest_key,
    version_file_key,
    version_prefix,
)
from buildsync.core.manifest import (
    ChunkRef,
    FileEntry,
    Manifest,
    parse_manifest,
    version_pointer_bytes,
)
from buildsync.core.retry import retry_with_backoff
from buildsync.publisher.delta import DeltaResult, detect_delta
from buildsync.publisher.storage import ChunkStore, ObjectNotFoundError, ObjectStore

logger = logging.getLogger(__name__)

BINARY_CONTENT_TYPE = "application/octet-stream"
JSON_CONTENT_TYPE = "application/json"

MODE_DELTA = "delta"
MODE_FULL = "full"


@dataclass
class UploadStats:
    """Counters for one upload batch.

    Attributes:
        total: Units in the batch.
        uploaded: Units written to the store.
        skipped: Units already present remotely.
        failed: Units that could not be uploaded.
        failed_hashes: Chunk hashes (or file paths) of failed units.
        cancelled: True if the batch stopped early on cancel.
    """

    total: int = 0
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    failed_hashes: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        """Units that reached a terminal outcome."""
        return self.uploaded + self.skipped + self.failed


@dataclass(frozen=True)
class UploadProgress:
    """Progress snapshot sent after each unit."""

    done: int
    total: int
    uploaded: int
    skipped: int
    failed: int
    key: str


UploadProgressCallback = Callable[[UploadProgress], None]


@dataclass(frozen=True)
class PublishResult:
    """Keys written when a manifest is published."""

    manifest: Manifest
    manifest_key: str
    version_key: str
    latest_key: str


@dataclass
class UploadRunResult:
    """Outcome of UploadOrchestrator.run."""

    chunk_stats: UploadStats
    file_stats: UploadStats
    delta: DeltaResult | None = None
    published: PublishResult | None = None

    @property
    def failed(self) -> int:
        """Failed units across chunks and files."""
        return self.chunk_stats.failed + self.file_stats.failed

    @property
    def cancelled(self) -> bool:
        """True if the run was cancelled before publishing."""
        return self.chunk_stats.cancelled or self.file_stats.cancelled


@dataclass(frozen=True)
class _UploadUnit:
    key: str
    label: str
    load: Callable[[], bytes]


def version_sort_key(version: str) -> tuple[int, ...]:
    """Sort key comparing dotted versions numerically ("1.10" > "1.9")."""
    parts = [int(p) if p.isdigit() else 0 for p in version.split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


class UploadOrchestrator:
    """Uploads chunks and files for a build, then publishes its manifest.

    One batch runs at a time on the caller's thread. ``pause``, ``resume``
    and ``cancel`` may be called from other threads; they take effect
    between units.
    """

    def __init__(
        self,
        store: ObjectStore,
        policy: RetryPolicy | None = None,
        progress_callback: UploadProgressCallback | None = None,
        base_url: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Remote object store.
            policy: Retry policy per unit (default 3 attempts, 2 s then 4 s).
            progress_callback: Called after each unit.
            base_url: Public URL of the bucket, recorded in published manifests.
        """
        self._store = store
        self._policy = policy or RetryPolicy()
        self._progress_callback = progress_callback
        self._base_url = base_url.rstrip("/") if base_url else None
        self._cancel_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()

    @property
    def store(self) -> ObjectStore:
        """Return the remote store."""
        return self._store

    # === Control ===

    @property
    def is_paused(self) -> bool:
        """Check if the batch is paused."""
        return not self._resume_event.is_set()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._cancel_event.is_set()

    def pause(self) -> None:
        """Pause before the next unit."""
        if not self.is_cancelled:
            self._resume_event.clear()
            logger.info("Upload paused")

    def resume(self) -> None:
        """Resume a paused batch."""
        self._resume_event.set()
        logger.info("Upload resumed")

    def cancel(self) -> None:
        """Cancel the batch; unblocks a paused batch."""
        self._cancel_event.set()
        self._resume_event.set()
        logger.info("Upload cancel requested")

    def reset(self) -> None:
        """Clear pause and cancel flags before a new batch."""
        self._cancel_event.clear()
        self._resume_event.set()

    # === Uploads ===

    def upload(
        self,
        chunks: Iterable[ChunkRef],
        chunk_store: ChunkStore,
        game_id: str,
        build_type: str,
        version: str,
        key_namer: KeyNamer = chunk_key,
    ) -> UploadStats:
        """Upload chunk payloads that are not yet in the remote store.

        Args:
            chunks: Chunks to upload; repeated hashes are uploaded once.
            chunk_store: Local store holding the payloads.
            game_id: Game identifier.
            build_type: Build channel.
            version: Version whose key prefix receives the chunks.
            key_namer: Maps (game, build, version, hash) to an object key.

        Returns:
            UploadStats for the batch.
        """
        units: list[_UploadUnit] = []
        seen: set[str] = set()
        for chunk in chunks:
            if chunk.hash in seen:
                continue
            seen.add(chunk.hash)
            units.append(
                _UploadUnit(
                    key=key_namer(game_id, build_type, version, chunk.hash),
                    label=chunk.hash,
                    load=lambda h=chunk.hash: chunk_store.get(h),
                )
            )
        return self._upload_units(units)

    def upload_files(
        self,
        entries: Iterable[FileEntry],
        files_root: Path,
        game_id: str,
        build_type: str,
        version: str,
    ) -> UploadStats:
        """Upload non-chunked files that are not yet in the remote store.

        Args:
            entries: Whole-file entries; chunked entries are ignored.
            files_root: Directory holding the files by relative path.
            game_id: Game identifier.
            build_type: Build channel.
            version: Version whose key prefix receives the files.

        Returns:
            UploadStats for the batch (failed_hashes holds paths).
        """
        root = Path(files_root)
        units = [
            _UploadUnit(
                key=file_key(game_id, build_type, version, entry.path),
                label=entry.path,
                load=lambda p=entry.path: root.joinpath(*p.split("/")).read_bytes(),
            )
            for entry in entries
            if not entry.is_chunked
        ]
        return self._upload_units(units)

    def _wait_if_paused(self) -> None:
        # cancel() sets the resume event, so this never outlives a cancel
        if self.is_paused:
            logger.debug("Waiting for resume")
        self._resume_event.wait()

    def _upload_units(self, units: Sequence[_UploadUnit]) -> UploadStats:
        stats = UploadStats(total=len(units))
        logger.info(f"Uploading {len(units)} objects to {self._store.location}")

        for unit in units:
            if self.is_cancelled:
                stats.cancelled = True
                break
            self._wait_if_paused()
            if self.is_cancelled:
                stats.cancelled = True
                break

            self._upload_unit(unit, stats)

            if self._progress_callback:
                self._progress_callback(
                    UploadProgress(
                        done=stats.processed,
                        total=stats.total,
                        uploaded=stats.uploaded,
                        skipped=stats.skipped,
                        failed=stats.failed,
                        key=unit.key,
                    )
                )

        if stats.cancelled:
            logger.info(f"Upload cancelled after {stats.processed}/{stats.total} objects")
        else:
            logger.info(
                f"Upload finished: {stats.uploaded} uploaded, {stats.skipped} skipped, "
                f"{stats.failed} failed"
            )
        return stats

    def _upload_unit(self, unit: _UploadUnit, stats: UploadStats) -> None:
        """Upload one unit, recording the outcome in stats."""
        try:
            if self._store.exists(unit.key):
                logger.debug(f"Skipping {unit.key} (already uploaded)")
                stats.skipped += 1
                return

            data = unit.load()
            retry_with_backoff(
                lambda: self._store.put(unit.key, data, BINARY_CONTENT_TYPE),
                policy=self._policy,
                description=f"Upload {unit.key}",
                should_stop=lambda: self.is_cancelled,
            )
        except Exception as e:
            logger.error(f"Failed to upload {unit.label}: {e}")
            stats.failed += 1
            stats.failed_hashes.append(unit.label)
            return

        logger.debug(f"Uploaded {unit.key} ({len(data)} bytes)")
        stats.uploaded += 1

    # === Publishing ===

    def publish(self, manifest: Manifest, previous: Manifest | None = None) -> PublishResult:
        """Publish a manifest with remote locators.

        Chunks already referenced by ``previous`` keep its locator; every
        other chunk points at this version's chunk key. Non-chunked files
        whose content is unchanged since ``previous`` keep its locator too.
        The latest alias is written last.

        Args:
            manifest: Manifest to publish.
            previous: Manifest of the version the delta was computed against.

        Returns:
            PublishResult with the written keys.

        Raises:
            TransferError: If a manifest object cannot be written.
        """
        game_id, build_type, version = manifest.game_id, manifest.build_type, manifest.version

        chunk_locators: dict[str, str] = {}
        file_locators: dict[str, str] = {}
        if previous is not None:
            for chunk in previous.all_chunks():
                chunk_locators.setdefault(
                    chunk.hash,
                    chunk.url
                    or chunk_key(previous.game_id, previous.build_type, previous.version, chunk.hash),
                )
            for entry in previous.files:
                if not entry.is_chunked and entry.checksum:
                    file_locators[f"{entry.path}\0{entry.checksum}"] = entry.url or file_key(
                        previous.game_id, previous.build_type, previous.version, entry.path
                    )

        published = manifest.with_locators(
            chunk_locator=lambda c: chunk_locators.get(
                c.hash, chunk_key(game_id, build_type, version, c.hash)
            ),
            file_locator=lambda f: file_locators.get(
                f"{f.path}\0{f.checksum}", file_key(game_id, build_type, version, f.path)
            ),
            base_url=self._base_url,
        )

        result = PublishResult(
            manifest=published,
            manifest_key=manifest_key(game_id, build_type, version),
            version_key=version_file_key(game_id, build_type, version),
            latest_key=latest_manifest_key(game_id, build_type),
        )
        body = published.to_json().encode("utf-8")
        self._put_with_retry(result.manifest_key, body, JSON_CONTENT_TYPE)
        self._put_with_retry(result.version_key, version_pointer_bytes(version), JSON_CONTENT_TYPE)
        self._put_with_retry(result.latest_key, body, JSON_CONTENT_TYPE)

        logger.info(f"Published {game_id} {build_type} {version} ({result.latest_key})")
        return result

    def _put_with_retry(self, key: str, data: bytes, content_type: str) -> None:
        try:
            retry_with_backoff(
                lambda: self._store.put(key, data, content_type),
                policy=self._policy,
                description=f"Upload {key}",
            )
        except Exception as e:
            raise TransferError(f"Failed to upload {key}: {e}") from e

    def run(
        self,
        manifest: Manifest,
        chunk_store: ChunkStore,
        files_root: Path | None = None,
        previous: Manifest | None = None,
        mode: str = MODE_DELTA,
        require_complete: bool = False,
    ) -> UploadRunResult:
        """Upload a packaged build and publish it.

        Pause and cancel flags left over from an earlier batch are cleared
        first.

        Args:
            manifest: Manifest produced by packaging.
            chunk_store: Local store with the build's chunks.
            files_root: Directory with the non-chunked files.
            previous: Currently published manifest, for delta uploads.
            mode: "delta" (upload only what ``previous`` lacks) or "full".
            require_complete: Do not publish if any unit failed.

        Returns:
            UploadRunResult; ``published`` is None when cancelled.

        Raises:
            ValueError: On an unknown mode.
            TransferError: If publishing fails, or units failed while
                ``require_complete`` is set.
        """
        if mode not in (MODE_DELTA, MODE_FULL):
            raise ValueError(f"Unknown upload mode: {mode}")
        self.reset()

        game_id, build_type, version = manifest.game_id, manifest.build_type, manifest.version
        delta: DeltaResult | None = None

        if mode == MODE_DELTA and previous is not None:
            delta = detect_delta(previous, manifest)
            logger.info(str(delta))
            chunks: list[ChunkRef] = delta.chunks_to_upload
            files: list[FileEntry] = delta.files_to_upload
        else:
            previous = None
            chunks = manifest.unique_chunks()
            files = [f for f in manifest.files if not f.is_chunked]

        chunk_stats = self.upload(chunks, chunk_store, game_id, build_type, version)
        if files and files_root is None:
            raise ValueError("files_root is required to upload non-chunked files")
        if chunk_stats.cancelled:
            file_stats = UploadStats(total=len(files), cancelled=True)
        else:
            file_stats = self.upload_files(files, files_root or Path("."), game_id, build_type, version)

        result = UploadRunResult(chunk_stats=chunk_stats, file_stats=file_stats, delta=delta)
        if result.cancelled:
            logger.info("Upload cancelled; manifest not published")
            return result

        if result.failed:
            if require_complete:
                raise TransferError(f"{result.failed} uploads failed; manifest not published")
            logger.warning(f"{result.failed} uploads failed; publishing anyway")

        result.published = self.publish(manifest, previous=previous)
        return result

    # === Version management ===

    def fetch_manifest(
        self,
        game_id: str,
        build_type: str,
        version: str | None = None,
    ) -> Manifest | None:
        """Fetch a published manifest.

        Args:
            game_id: Game identifier.
            build_type: Build channel.
            version: Version to fetch; None fetches the latest alias.

        Returns:
            The manifest, or None if it is not published.
        """
        key = (
            manifest_key(game_id, build_type, version)
            if version
            else latest_manifest_key(game_id, build_type)
        )
        try:
            return parse_manifest(self._store.get(key))
        except ObjectNotFoundError:
            return None

    def list_versions(self, game_id: str, build_type: str) -> list[str]:
        """List published versions, newest first."""
        prefix = version_prefix(game_id, build_type, "")
        versions = [v for v in self._store.list_prefixes(prefix) if "manifest" not in v]
        return sorted(versions, key=version_sort_key, reverse=True)

    def promote_version(self, game_id: str, build_type: str, version: str) -> str:
        """Make a published version the latest.

        Returns:
            Key of the latest alias.

        Raises:
            ObjectNotFoundError: If the version's manifest is not published.
            TransferError: If the alias cannot be written.
        """
        data = self._store.get(manifest_key(game_id, build_type, version))
        latest = latest_manifest_key(game_id, build_type)
        self._put_with_retry(latest, data, JSON_CONTENT_TYPE)
        logger.info(f"Promoted {game_id} {build_type} {version} to latest")
        return latest

    def test_connection(self) -> bool:
        """Check that the remote store is reachable."""
        try:
            self._store.check()
        except Exception as e:
            logger.warning(f"Connection to {self._store.location} failed: {e}")
            return False
        return True
