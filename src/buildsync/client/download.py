"""Download and reconstruct a build on a client.

This module provides:
- DownloadOrchestrator: Sequential per-file download session with retry,
  pause/resume/cancel and integrity verification
- DownloadResult: Outcome of a session

Each file is written to ``<dest>.part`` and moved into place only after
verification, so an install never contains a partially written file.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from buildsync.client.api import BuildFetcher, NotFoundError
from buildsync.client.state import DownloadState, StateCallback, StateTracker
from buildsync.client.updates import check_for_updates
from buildsync.core.checksums import compute_file_checksum
from buildsync.core.chunking import get_chunk_hash
from buildsync.core.config import DownloadConfig
from buildsync.core.errors import (
    BuildSyncError,
    ChecksumMismatch,
    ChunkMissingRemotely,
    MalformedManifest,
    TransferCancelled,
    TransferPaused,
)
from buildsync.core.keys import chunk_key
from buildsync.core.manifest import ChunkRef, FileEntry, Manifest, write_version_pointer
from buildsync.core.types import SessionStatus
from buildsync.publisher.storage import ChunkNotFoundError, ChunkStore

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


@dataclass
class DownloadResult:
    """Outcome of a download session.

    Attributes:
        status: Final status (SUCCESS, ERROR, or IDLE after a cancel).
        files_downloaded: Files completed in this session.
        attempts: Attempts used per path, for files that were tried.
        error: Message of the error that ended the session.
        cancelled: True if the session was cancelled.
    """

    status: SessionStatus
    files_downloaded: int = 0
    attempts: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """True if every file was downloaded."""
        return self.status == SessionStatus.SUCCESS


class _SpeedSampler:
    """Background thread turning byte counts into a throughput figure.

    The sampler only records the figure; the session thread publishes it
    with its next progress update.
    """

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._bytes = 0
        self._speed = 0.0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="buildsync-speed", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._thread.join(timeout=self._interval * 4)

    @property
    def speed(self) -> float:
        """Bytes per second over the last sample interval."""
        with self._lock:
            return self._speed

    def add(self, count: int) -> None:
        with self._lock:
            self._bytes += count

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            with self._lock:
                self._speed = self._bytes / self._interval
                self._bytes = 0


class DownloadOrchestrator:
    """Runs download sessions for one install.

    ``start`` runs a session on the caller's thread; ``pause``, ``resume``
    and ``cancel`` may be called from any thread and take effect between
    chunks or stream blocks.

    Lifecycle:
        IDLE -> DOWNLOADING <-> PAUSED -> SUCCESS | ERROR
        DOWNLOADING | PAUSED -> CANCELLING -> IDLE
    """

    def __init__(
        self,
        fetcher: BuildFetcher,
        config: DownloadConfig | None = None,
        chunk_cache: ChunkStore | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            fetcher: HTTP client for chunks and files.
            config: Attempts, poll and sample intervals.
            chunk_cache: Optional local chunk store consulted before the
                network and filled with fetched chunks.
        """
        self._fetcher = fetcher
        self._config = config or DownloadConfig()
        self._cache = chunk_cache
        self._tracker = StateTracker()
        self._control_lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._sampler: _SpeedSampler | None = None

        # Per-session locator defaults
        self._base_url: str | None = None
        self._game_id = ""
        self._build_type = "release"
        self._version = ""
        # Sizes announced by the host for entries the manifest left unsized
        self._announced_sizes: dict[str, int] = {}

    # === State ===

    @property
    def state(self) -> DownloadState:
        """Return the current state snapshot."""
        return self._tracker.state

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register a state observer; returns a function that unsubscribes."""
        return self._tracker.subscribe(callback)

    # === Control ===

    def pause(self) -> None:
        """Pause the session; the in-flight file restarts on resume."""
        with self._control_lock:
            if self._tracker.state.status != SessionStatus.DOWNLOADING:
                return
            self._resume_event.clear()
            self._tracker.update(status=SessionStatus.PAUSED)
        logger.info("Download paused")

    def resume(self) -> None:
        """Resume a paused session."""
        with self._control_lock:
            if self._tracker.state.status != SessionStatus.PAUSED:
                return
            self._tracker.update(status=SessionStatus.DOWNLOADING)
            self._resume_event.set()
        logger.info("Download resumed")

    def cancel(self) -> None:
        """Cancel the session; safe to call repeatedly."""
        with self._control_lock:
            if not self._tracker.state.status.is_active:
                return
            self._tracker.update(status=SessionStatus.CANCELLING)
            self._cancel_event.set()
            self._resume_event.set()
        logger.info("Download cancel requested")

    # === Sessions ===

    def sync(self, manifest: Manifest, install_path: Path) -> DownloadResult | None:
        """Bring an install up to date with a manifest.

        Only files whose local copy is missing or differs are downloaded.
        """
        check = check_for_updates(manifest, install_path)
        return self.start(
            check.files_to_update,
            install_path,
            manifest.version,
            base_url=manifest.base_url,
            game_id=manifest.game_id,
            build_type=manifest.build_type,
        )

    def start(
        self,
        files: Sequence[FileEntry],
        install_path: Path,
        latest_version: str,
        base_url: str | None = None,
        game_id: str = "",
        build_type: str = "release",
    ) -> DownloadResult | None:
        """Download a batch of files into an install.

        Args:
            files: Entries to download, in order.
            install_path: Install root; the version pointer is written here
                when every file succeeded.
            latest_version: Version recorded on success.
            base_url: Base for relative locators (defaults to the fetcher's).
            game_id: Game identifier, for chunks without a locator.
            build_type: Build channel, for chunks without a locator.

        Returns:
            DownloadResult, or None if a session is already running.
        """
        with self._control_lock:
            status = self._tracker.state.status
            if status.is_active or status == SessionStatus.CANCELLING:
                logger.warning("Download already in progress; ignoring start")
                return None
            self._cancel_event.clear()
            self._resume_event.set()
            self._tracker.reset(
                status=SessionStatus.DOWNLOADING,
                total_files=len(files),
                total_bytes=sum(f.total_size for f in files),
            )

        self._base_url = base_url
        self._game_id = game_id
        self._build_type = build_type
        self._version = latest_version
        self._announced_sizes = {}

        sampler = _SpeedSampler(self._config.speed_sample_interval)
        self._sampler = sampler
        sampler.start()
        try:
            return self._run_session(list(files), Path(install_path), latest_version)
        except Exception as e:
            self._tracker.update(status=SessionStatus.ERROR, last_error=str(e))
            raise
        finally:
            sampler.stop()
            self._sampler = None

    def _run_session(
        self,
        files: list[FileEntry],
        install_path: Path,
        latest_version: str,
    ) -> DownloadResult:
        result = DownloadResult(status=SessionStatus.DOWNLOADING)
        completed_bytes = 0
        logger.info(f"Downloading {len(files)} files to {install_path}")

        for entry in files:
            try:
                dest = _destination(install_path, entry.path)
            except MalformedManifest as e:
                return self._fail(result, str(e))

            self._tracker.update(current_file=entry.path)
            attempt = 0

            while True:
                if self._cancel_event.is_set():
                    return self._finish_cancelled(result)
                self._wait_if_paused()
                if self._cancel_event.is_set():
                    return self._finish_cancelled(result)

                try:
                    self._download_entry(entry, dest, completed_bytes)
                except TransferCancelled:
                    return self._finish_cancelled(result)
                except TransferPaused:
                    logger.info(f"Paused during {entry.path}; will restart it")
                    continue
                except (BuildSyncError, OSError) as e:
                    attempt += 1
                    result.attempts[entry.path] = attempt
                    if attempt >= self._config.max_attempts:
                        return self._fail(
                            result,
                            f"Failed to download {entry.path} after {attempt} attempts: {e}",
                        )
                    logger.warning(
                        f"Download of {entry.path} failed "
                        f"(attempt {attempt}/{self._config.max_attempts}): {e}"
                    )
                    continue

                attempt += 1
                result.attempts[entry.path] = attempt
                break

            completed_bytes += (
                entry.total_size or self._announced_sizes.get(entry.path) or dest.stat().st_size
            )
            result.files_downloaded += 1
            self._tracker.update(files_downloaded=result.files_downloaded)
            self._tracker.advance_bytes(completed_bytes)
            logger.info(f"Downloaded {entry.path} ({result.files_downloaded}/{len(files)})")

        write_version_pointer(install_path, latest_version)
        self._tracker.update(
            status=SessionStatus.SUCCESS,
            current_file=None,
            speed_bytes_per_sec=0.0,
        )
        result.status = SessionStatus.SUCCESS
        logger.info(f"Install at {install_path} is now at version {latest_version}")
        return result

    def _fail(self, result: DownloadResult, message: str) -> DownloadResult:
        logger.error(message)
        self._tracker.update(
            status=SessionStatus.ERROR,
            last_error=message,
            speed_bytes_per_sec=0.0,
        )
        result.status = SessionStatus.ERROR
        result.error = message
        return result

    def _finish_cancelled(self, result: DownloadResult) -> DownloadResult:
        logger.info("Download cancelled")
        self._tracker.reset()
        result.status = SessionStatus.IDLE
        result.cancelled = True
        return result

    def _wait_if_paused(self) -> None:
        """Block until resumed, checking for cancel every poll interval."""
        while not self._resume_event.wait(self._config.pause_poll_interval):
            if self._cancel_event.is_set():
                return

    def _check_interrupt(self) -> None:
        if self._cancel_event.is_set():
            raise TransferCancelled()
        if not self._resume_event.is_set():
            raise TransferPaused()

    # === Single file ===

    def _download_entry(self, entry: FileEntry, dest: Path, completed_bytes: int) -> None:
        """Make one attempt at a file; the part file never survives a failure."""
        self._check_interrupt()
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + PART_SUFFIX)

        try:
            if entry.is_chunked:
                self._download_chunked(entry, part, completed_bytes)
            else:
                self._download_whole(entry, part, completed_bytes)
            os.replace(part, dest)
        except BaseException:
            with contextlib.suppress(OSError):
                part.unlink()
            raise

    def _record_progress(self, completed_bytes: int, written: int, expected: int) -> None:
        current = min(written, expected) if expected else written
        speed = self._sampler.speed if self._sampler is not None else 0.0
        self._tracker.advance_bytes(completed_bytes + current, speed_bytes_per_sec=speed)

    def _download_chunked(self, entry: FileEntry, part: Path, completed_bytes: int) -> None:
        written = 0
        with open(part, "wb") as f:
            for ref in entry.chunks or ():
                self._check_interrupt()
                data = self._get_chunk(entry, ref)
                f.write(data)
                written += len(data)
                self._record_progress(completed_bytes, written, entry.total_size)

        actual = part.stat().st_size
        if actual != entry.total_size:
            raise ChecksumMismatch(entry.path, entry.total_size, actual)

    def _get_chunk(self, entry: FileEntry, ref: ChunkRef) -> bytes:
        """Return a verified chunk payload from the cache or the network."""
        if self._cache is not None:
            with contextlib.suppress(ChunkNotFoundError):
                data = self._cache.get(ref.hash)
                if len(data) == ref.size and get_chunk_hash(data) == ref.hash:
                    logger.debug(f"Chunk {ref.hash[:8]}... served from cache")
                    return data
                logger.warning(f"Ignoring corrupt cached chunk {ref.hash}")

        locator = ref.url or self._default_chunk_locator(ref.hash)
        try:
            data = self._fetcher.fetch_chunk(locator, self._base_url)
        except NotFoundError as e:
            raise ChunkMissingRemotely(ref.hash, locator) from e

        if self._sampler is not None:
            self._sampler.add(len(data))

        if len(data) != ref.size:
            raise ChecksumMismatch(f"{entry.path} (chunk {ref.hash[:8]})", ref.size, len(data))
        actual = get_chunk_hash(data)
        if actual != ref.hash:
            raise ChecksumMismatch(f"{entry.path} (chunk {ref.hash[:8]})", ref.hash, actual)

        if self._cache is not None:
            self._cache.put(ref.hash, data)
        return data

    def _default_chunk_locator(self, chunk_hash: str) -> str:
        if self._game_id:
            return chunk_key(self._game_id, self._build_type, self._version, chunk_hash)
        return f"chunks/{chunk_hash[:2]}/{chunk_hash}"

    def _download_whole(self, entry: FileEntry, part: Path, completed_bytes: int) -> None:
        written = 0
        locator = entry.url or entry.path
        with self._fetcher.stream_file(
            locator, self._base_url, self._config.stream_block_size
        ) as blocks, open(part, "wb") as f:
            expected = entry.total_size or self._announce_size(entry, blocks.size)
            for block in blocks:
                self._check_interrupt()
                f.write(block)
                written += len(block)
                if self._sampler is not None:
                    self._sampler.add(len(block))
                self._record_progress(completed_bytes, written, expected)

        if entry.checksum:
            actual = compute_file_checksum(part, name=entry.path)
            if actual != entry.checksum:
                raise ChecksumMismatch(entry.path, entry.checksum, actual)
        elif written != entry.total_size:
            raise ChecksumMismatch(entry.path, entry.total_size, written)

    def _announce_size(self, entry: FileEntry, size: int | None) -> int:
        """Count the host's Content-Length of an unsized entry into the batch total."""
        if size is None:
            return 0
        if entry.path not in self._announced_sizes:
            self._announced_sizes[entry.path] = size
            self._tracker.update(total_bytes=self._tracker.state.total_bytes + size)
        return self._announced_sizes[entry.path]


def _destination(install_path: Path, path: str) -> Path:
    """Map a manifest path into the install, refusing paths that escape it."""
    root = install_path.resolve()
    dest = root.joinpath(*path.split("/")).resolve()
    if dest == root or not dest.is_relative_to(root):
        raise MalformedManifest(f"Path escapes install directory: {path}")
    return dest
