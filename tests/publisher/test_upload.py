"""Tests for uploading and publishing packaged builds."""

import json
import random
import threading
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from buildsync.core.config import ChunkerConfig, RetryPolicy
from buildsync.core.errors import TransferError
from buildsync.core.keys import chunk_key, file_key, latest_manifest_key, manifest_key
from buildsync.core.manifest import Manifest, parse_manifest
from buildsync.core.types import FileChange
from buildsync.publisher.packager import PackageResult, package_build
from buildsync.publisher.storage import ChunkStore, LocalObjectStore, ObjectStore
from buildsync.publisher.upload import (
    MODE_FULL,
    UploadOrchestrator,
    UploadProgress,
    UploadRunResult,
    version_sort_key,
)

SMALL = ChunkerConfig(min_size=1024, avg_size=4096, max_size=16 * 1024)


@pytest.fixture(autouse=True)
def no_sleep() -> Iterator[MagicMock]:
    """Retries never wait in tests."""
    with patch("buildsync.core.retry.time.sleep") as sleep:
        yield sleep


def make_build(root: Path, exe: bytes, pak: bytes) -> Path:
    """Write a tiny build with two chunked files and one whole file."""
    (root / "Content").mkdir(parents=True)
    (root / "Config").mkdir()
    (root / "Game.exe").write_bytes(exe)
    (root / "Content" / "pak0.pak").write_bytes(pak)
    (root / "Config" / "game.ini").write_bytes(b"[Engine]\nFoo=1\n")
    return root


@pytest.fixture
def payloads() -> tuple[bytes, bytes]:
    """Random contents for Game.exe and pak0.pak."""
    rng = random.Random(11)
    return rng.randbytes(48 * 1024), rng.randbytes(32 * 1024)


@pytest.fixture
def v1(tmp_path: Path, payloads: tuple[bytes, bytes]) -> PackageResult:
    """Version 1.0 packaged into tmp_path/out1."""
    source = make_build(tmp_path / "build1", *payloads)
    return package_build(source, tmp_path / "out1", "Arena", "1.0", chunker=SMALL)


@pytest.fixture
def v2(tmp_path: Path, payloads: tuple[bytes, bytes]) -> PackageResult:
    """Version 1.1: Game.exe gains a tail, pak0.pak and game.ini unchanged."""
    exe, pak = payloads
    source = make_build(tmp_path / "build2", exe + random.Random(12).randbytes(8 * 1024), pak)
    return package_build(source, tmp_path / "out2", "Arena", "1.1", chunker=SMALL)


@pytest.fixture
def bucket(tmp_path: Path) -> LocalObjectStore:
    """Directory-backed bucket."""
    return LocalObjectStore(tmp_path / "bucket")


def run_full(orchestrator: UploadOrchestrator, package: PackageResult) -> UploadRunResult:
    """Upload and publish a packaged build in full mode."""
    return orchestrator.run(
        package.manifest,
        ChunkStore(package.chunks_dir),
        files_root=package.files_dir,
        mode=MODE_FULL,
    )


def assert_locators_resolve(manifest: Manifest, store: ObjectStore) -> None:
    """Every locator in a published manifest names an existing object."""
    for entry in manifest.files:
        if entry.is_chunked:
            for chunk in entry.chunks or ():
                assert chunk.url is not None
                assert store.exists(chunk.url), chunk.url
        else:
            assert entry.url is not None
            assert store.exists(entry.url), entry.url


class TestUpload:
    """Tests for chunk and file upload batches."""

    def test_uploads_every_unique_chunk(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """All chunks land under the version's chunk keys."""
        orchestrator = UploadOrchestrator(bucket)
        chunks = v1.manifest.unique_chunks()

        stats = orchestrator.upload(chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0")

        assert stats.total == len(chunks)
        assert stats.uploaded == len(chunks)
        assert stats.skipped == stats.failed == 0
        for chunk in chunks:
            assert bucket.get(chunk_key("Arena", "release", "1.0", chunk.hash)) == (
                ChunkStore(v1.chunks_dir).get(chunk.hash)
            )

    def test_duplicate_hashes_uploaded_once(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Repeated chunk references form one unit."""
        chunks = v1.manifest.unique_chunks()
        stats = UploadOrchestrator(bucket).upload(
            chunks + chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )
        assert stats.total == len(chunks)

    def test_existing_objects_skipped(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Objects already in the bucket are not uploaded again."""
        chunks = v1.manifest.unique_chunks()
        first = chunks[0]
        bucket.put(chunk_key("Arena", "release", "1.0", first.hash), b"already there")

        stats = UploadOrchestrator(bucket).upload(
            chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )

        assert stats.skipped == 1
        assert stats.uploaded == len(chunks) - 1
        assert bucket.get(chunk_key("Arena", "release", "1.0", first.hash)) == b"already there"

    def test_failed_unit_does_not_stop_batch(self, v1: PackageResult, no_sleep: MagicMock) -> None:
        """A unit failing every attempt is recorded and the batch continues."""
        chunks = v1.manifest.unique_chunks()
        bad_key = chunk_key("Arena", "release", "1.0", chunks[0].hash)

        store = MagicMock(spec=ObjectStore)
        store.exists.return_value = False

        def put(key: str, data: bytes, content_type: str = "") -> None:
            if key == bad_key:
                raise ConnectionError("connection reset")

        store.put.side_effect = put

        stats = UploadOrchestrator(store).upload(
            chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )

        assert stats.failed == 1
        assert stats.failed_hashes == [chunks[0].hash]
        assert stats.uploaded == len(chunks) - 1
        # Three attempts on the bad key, waiting 2s then 4s
        assert [c.args[0] for c in store.put.call_args_list].count(bad_key) == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [2.0, 4.0]

    def test_upload_files(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Whole files are uploaded under the version's file keys."""
        stats = UploadOrchestrator(bucket).upload_files(
            v1.manifest.files, v1.files_dir, "Arena", "release", "1.0"
        )
        assert stats.uploaded == 1
        assert bucket.get(file_key("Arena", "release", "1.0", "Config/game.ini")) == (
            b"[Engine]\nFoo=1\n"
        )

    def test_progress_reported_per_unit(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Progress snapshots count up to the total."""
        progress: list[UploadProgress] = []
        chunks = v1.manifest.unique_chunks()
        UploadOrchestrator(bucket, progress_callback=progress.append).upload(
            chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )
        assert [p.done for p in progress] == list(range(1, len(chunks) + 1))
        assert all(p.total == len(chunks) for p in progress)


class TestPauseCancel:
    """Tests for pausing and cancelling uploads."""

    def test_cancel_stops_batch(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Cancelling from the progress callback stops after the current unit."""
        orchestrator = UploadOrchestrator(
            bucket, progress_callback=lambda progress: orchestrator.cancel()
        )

        stats = orchestrator.upload(
            v1.manifest.unique_chunks(), ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )

        assert stats.cancelled
        assert stats.processed == 1

    def test_cancelled_run_does_not_publish(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """No manifest is written when the run is cancelled."""
        orchestrator = UploadOrchestrator(
            bucket, progress_callback=lambda progress: orchestrator.cancel()
        )

        result = run_full(orchestrator, v1)

        assert result.cancelled
        assert result.published is None
        assert not bucket.exists(latest_manifest_key("Arena", "release"))

    def test_pause_then_resume(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """A paused batch waits, then completes after resume."""
        orchestrator = UploadOrchestrator(bucket)
        orchestrator.pause()
        assert orchestrator.is_paused
        timer = threading.Timer(0.1, orchestrator.resume)
        timer.start()

        chunks = v1.manifest.unique_chunks()
        stats = orchestrator.upload(chunks, ChunkStore(v1.chunks_dir), "Arena", "release", "1.0")
        timer.join()

        assert not orchestrator.is_paused
        assert stats.uploaded == len(chunks)

    def test_cancel_while_paused(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Cancel unblocks a paused batch without uploading."""
        orchestrator = UploadOrchestrator(bucket)
        orchestrator.pause()
        timer = threading.Timer(0.1, orchestrator.cancel)
        timer.start()

        stats = orchestrator.upload(
            v1.manifest.unique_chunks(), ChunkStore(v1.chunks_dir), "Arena", "release", "1.0"
        )
        timer.join()

        assert stats.cancelled
        assert stats.uploaded == 0

    def test_reset_clears_cancel(self, bucket: LocalObjectStore) -> None:
        """reset() allows a new batch after a cancel."""
        orchestrator = UploadOrchestrator(bucket)
        orchestrator.cancel()
        assert orchestrator.is_cancelled
        orchestrator.reset()
        assert not orchestrator.is_cancelled
        assert not orchestrator.is_paused

    def test_run_after_cancel_starts_fresh(
        self, v1: PackageResult, bucket: LocalObjectStore
    ) -> None:
        """A cancel from an earlier batch does not carry into the next run."""
        orchestrator = UploadOrchestrator(bucket)
        orchestrator.cancel()
        orchestrator.pause()

        result = run_full(orchestrator, v1)

        assert not result.cancelled
        assert result.published is not None
        assert bucket.exists(latest_manifest_key("Arena", "release"))


class TestRunAndPublish:
    """Tests for full runs and manifest publishing."""

    def test_full_run_publishes_all_keys(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """A full run writes the manifest, version pointer and latest alias."""
        orchestrator = UploadOrchestrator(bucket, base_url="https://cdn.example.com/")

        result = run_full(orchestrator, v1)

        assert result.failed == 0
        published = result.published
        assert published is not None
        assert published.manifest_key == "Arena/release/1.0/manifest.json"
        assert published.version_key == "Arena/release/1.0/version.json"
        assert published.latest_key == "Arena/release/arena_manifest.json"
        assert json.loads(bucket.get(published.version_key)) == {"version": "1.0"}
        assert bucket.get(published.latest_key) == bucket.get(published.manifest_key)

        manifest = parse_manifest(bucket.get(published.latest_key))
        assert manifest.base_url == "https://cdn.example.com"
        assert_locators_resolve(manifest, bucket)

    def test_delta_run_reuses_previous_locators(
        self, v1: PackageResult, v2: PackageResult, bucket: LocalObjectStore
    ) -> None:
        """Unchanged content keeps pointing at the version that uploaded it."""
        orchestrator = UploadOrchestrator(bucket)
        run_full(orchestrator, v1)
        previous = orchestrator.fetch_manifest("Arena", "release")
        assert previous is not None

        result = orchestrator.run(
            v2.manifest, ChunkStore(v2.chunks_dir), files_root=v2.files_dir, previous=previous
        )

        assert result.delta is not None
        assert result.delta.change_for("Content/pak0.pak") == FileChange.UNCHANGED
        assert result.delta.change_for("Game.exe") == FileChange.CHANGED
        assert result.chunk_stats.total == len(result.delta.chunks_to_upload)
        assert result.file_stats.total == 0

        latest = orchestrator.fetch_manifest("Arena", "release")
        assert latest is not None and latest.version == "1.1"
        pak = latest.get_file("Content/pak0.pak")
        ini = latest.get_file("Config/game.ini")
        assert pak is not None and ini is not None
        assert all((c.url or "").startswith("Arena/release/1.0/") for c in pak.chunks or ())
        assert ini.url == "Arena/release/1.0/files/Config/game.ini"

        new_hashes = {c.hash for c in result.delta.chunks_to_upload}
        assert new_hashes
        for chunk in latest.all_chunks():
            if chunk.hash in new_hashes:
                assert chunk.url == chunk_key("Arena", "release", "1.1", chunk.hash)
        assert_locators_resolve(latest, bucket)

    def test_partial_failure_publishes_by_default(self, v1: PackageResult) -> None:
        """Failed units are logged and the manifest is still published."""
        store = MagicMock(spec=ObjectStore)
        store.exists.return_value = False
        bad_key = chunk_key("Arena", "release", "1.0", v1.manifest.unique_chunks()[0].hash)

        def put(key: str, data: bytes, content_type: str = "") -> None:
            if key == bad_key:
                raise ConnectionError("boom")

        store.put.side_effect = put

        result = run_full(UploadOrchestrator(store), v1)

        assert result.failed == 1
        assert result.published is not None

    def test_require_complete_blocks_publish(self, v1: PackageResult) -> None:
        """With require_complete a failed unit raises instead of publishing."""
        store = MagicMock(spec=ObjectStore)
        store.exists.return_value = False
        store.put.side_effect = ConnectionError("offline")

        with pytest.raises(TransferError, match="not published"):
            UploadOrchestrator(store, policy=RetryPolicy(max_attempts=1)).run(
                v1.manifest,
                ChunkStore(v1.chunks_dir),
                files_root=v1.files_dir,
                mode=MODE_FULL,
                require_complete=True,
            )
        put_keys = [c.args[0] for c in store.put.call_args_list]
        assert manifest_key("Arena", "release", "1.0") not in put_keys

    def test_publish_failure_raises_transfer_error(self, v1: PackageResult) -> None:
        """A manifest that cannot be written is a transfer error."""
        store = MagicMock(spec=ObjectStore)
        store.put.side_effect = ConnectionError("offline")
        with pytest.raises(TransferError, match="manifest.json"):
            UploadOrchestrator(store).publish(v1.manifest)

    def test_unknown_mode_rejected(self, v1: PackageResult, bucket: LocalObjectStore) -> None:
        """Only delta and full modes exist."""
        with pytest.raises(ValueError, match="mode"):
            UploadOrchestrator(bucket).run(v1.manifest, ChunkStore(v1.chunks_dir), mode="partial")

    def test_files_root_required_for_whole_files(
        self, v1: PackageResult, bucket: LocalObjectStore
    ) -> None:
        """Whole-file entries need a files directory."""
        with pytest.raises(ValueError, match="files_root"):
            UploadOrchestrator(bucket).run(v1.manifest, ChunkStore(v1.chunks_dir), mode=MODE_FULL)


class TestVersionManagement:
    """Tests for listing, fetching and promoting versions."""

    def publish_versions(self, bucket: LocalObjectStore, *versions: str) -> None:
        """Publish one-file manifests for the given versions."""
        orchestrator = UploadOrchestrator(bucket)
        for version in versions:
            manifest = parse_manifest(
                {
                    "version": version,
                    "gameId": "Arena",
                    "files": [{"path": "a.txt", "totalSize": 1, "checksum": "a" * 64}],
                }
            )
            orchestrator.publish(manifest)

    def test_list_versions_newest_first(self, bucket: LocalObjectStore) -> None:
        """Versions sort numerically, newest first."""
        self.publish_versions(bucket, "1.2", "1.10", "1.9")
        assert UploadOrchestrator(bucket).list_versions("Arena", "release") == ["1.10", "1.9", "1.2"]

    def test_fetch_specific_and_latest(self, bucket: LocalObjectStore) -> None:
        """Latest is the last published; specific versions stay reachable."""
        self.publish_versions(bucket, "1.0", "2.0")
        orchestrator = UploadOrchestrator(bucket)

        latest = orchestrator.fetch_manifest("Arena", "release")
        older = orchestrator.fetch_manifest("Arena", "release", "1.0")
        assert latest is not None and latest.version == "2.0"
        assert older is not None and older.version == "1.0"

    def test_fetch_missing_returns_none(self, bucket: LocalObjectStore) -> None:
        """Nothing published means no manifest."""
        assert UploadOrchestrator(bucket).fetch_manifest("Arena", "release") is None

    def test_promote_version(self, bucket: LocalObjectStore) -> None:
        """Promoting rewrites the latest alias with an older manifest."""
        self.publish_versions(bucket, "1.0", "2.0")
        orchestrator = UploadOrchestrator(bucket)

        key = orchestrator.promote_version("Arena", "release", "1.0")

        assert key == latest_manifest_key("Arena", "release")
        assert bucket.get(key) == bucket.get(manifest_key("Arena", "release", "1.0"))

    def test_test_connection(self, bucket: LocalObjectStore) -> None:
        """Reachable stores pass, failing ones report False."""
        assert UploadOrchestrator(bucket).test_connection() is True

        broken = MagicMock(spec=ObjectStore)
        broken.check.side_effect = ConnectionError("unreachable")
        assert UploadOrchestrator(broken).test_connection() is False


class TestVersionSortKey:
    """Tests for numeric version ordering."""

    def test_numeric_ordering(self) -> None:
        """Components compare as integers."""
        assert version_sort_key("1.10") > version_sort_key("1.9")
        assert version_sort_key("2") > version_sort_key("1.99")

    def test_trailing_zeros_ignored(self) -> None:
        """1.0 and 1 sort equal."""
        assert version_sort_key("1.0.0") == version_sort_key("1")
