"""Tests for chunk and object storage."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from buildsync.core.chunking import get_chunk_hash
from buildsync.core.config import ObjectStoreConfig
from buildsync.publisher.storage import (
    ChunkNotFoundError,
    ChunkStore,
    LocalObjectStore,
    ObjectNotFoundError,
    S3ObjectStore,
    create_object_store,
)


class TestChunkStore:
    """Tests for the local content-addressed chunk store."""

    def test_put_and_get(self, tmp_path: Path) -> None:
        """Stored chunks can be read back."""
        store = ChunkStore(tmp_path / "chunks")
        data = b"chunk payload"
        chunk_hash = get_chunk_hash(data)

        assert store.put(chunk_hash, data) is True
        assert store.has(chunk_hash)
        assert store.get(chunk_hash) == data

    def test_sharded_layout(self, tmp_path: Path) -> None:
        """Chunks live under a two-character hash prefix directory."""
        store = ChunkStore(tmp_path)
        chunk_hash = get_chunk_hash(b"x")
        store.put(chunk_hash, b"x")
        assert (tmp_path / chunk_hash[:2] / chunk_hash).is_file()

    def test_put_existing_is_noop(self, tmp_path: Path) -> None:
        """A second put of the same hash writes nothing."""
        store = ChunkStore(tmp_path)
        chunk_hash = get_chunk_hash(b"same")
        store.put(chunk_hash, b"same")
        assert store.put(chunk_hash, b"same") is False
        assert len(store) == 1

    def test_get_missing_raises(self, tmp_path: Path) -> None:
        """Missing chunks raise ChunkNotFoundError."""
        with pytest.raises(ChunkNotFoundError):
            ChunkStore(tmp_path).get("0" * 64)

    def test_hashes_lists_stored_chunks(self, tmp_path: Path) -> None:
        """hashes() yields every stored chunk and ignores temp files."""
        store = ChunkStore(tmp_path)
        hashes = {get_chunk_hash(bytes([i])) for i in range(5)}
        for i in range(5):
            store.put(get_chunk_hash(bytes([i])), bytes([i]))
        some = next(iter(hashes))
        (tmp_path / some[:2] / f".{some}.abc.tmp").write_bytes(b"partial")

        assert set(store.hashes()) == hashes
        assert len(store) == 5


class TestLocalObjectStore:
    """Tests for the directory-backed bucket."""

    def test_put_get_exists(self, tmp_path: Path) -> None:
        """Objects are stored under their key path."""
        store = LocalObjectStore(tmp_path)
        store.put("Arena/release/1.0/manifest.json", b"{}", "application/json")

        assert store.exists("Arena/release/1.0/manifest.json")
        assert store.get("Arena/release/1.0/manifest.json") == b"{}"
        assert (tmp_path / "Arena" / "release" / "1.0" / "manifest.json").is_file()

    def test_put_overwrites(self, tmp_path: Path) -> None:
        """A put replaces the previous object."""
        store = LocalObjectStore(tmp_path)
        store.put("k", b"old")
        store.put("k", b"new")
        assert store.get("k") == b"new"

    def test_get_missing_raises(self, tmp_path: Path) -> None:
        """Missing keys raise ObjectNotFoundError."""
        store = LocalObjectStore(tmp_path)
        assert not store.exists("nope")
        with pytest.raises(ObjectNotFoundError):
            store.get("nope")

    def test_list_prefixes(self, tmp_path: Path) -> None:
        """Only immediate sub-directories are listed."""
        store = LocalObjectStore(tmp_path)
        store.put("Arena/release/1.0/manifest.json", b"{}")
        store.put("Arena/release/1.1/manifest.json", b"{}")
        store.put("Arena/release/arena_manifest.json", b"{}")

        assert store.list_prefixes("Arena/release/") == ["1.0", "1.1"]
        assert store.list_prefixes("") == ["Arena"]
        assert store.list_prefixes("Other/") == []

    def test_location(self, tmp_path: Path) -> None:
        """Location names the directory."""
        assert str(tmp_path.resolve()) in LocalObjectStore(tmp_path).location


class TestCreateObjectStore:
    """Tests for the object store factory."""

    def test_local(self, tmp_path: Path) -> None:
        """type=local builds a LocalObjectStore."""
        store = create_object_store(ObjectStoreConfig(type="local", local_path=str(tmp_path)))
        assert isinstance(store, LocalObjectStore)

    def test_s3_requires_bucket(self) -> None:
        """type=s3 without a bucket is rejected."""
        with pytest.raises(ValueError, match="bucket"):
            create_object_store(ObjectStoreConfig(type="s3"))

    def test_unknown_type(self) -> None:
        """Unknown types are rejected."""
        with pytest.raises(ValueError, match="Unknown storage type"):
            create_object_store(ObjectStoreConfig(type="ftp"))

    def test_s3(self) -> None:
        """type=s3 builds an S3ObjectStore for the R2 endpoint."""
        store = create_object_store(
            ObjectStoreConfig(
                type="s3",
                bucket="builds",
                account_id="acct",
                access_key="key",
                secret_key="secret",
            )
        )
        assert isinstance(store, S3ObjectStore)
        assert store.location == "S3: https://acct.r2.cloudflarestorage.com/builds"


class TestS3ObjectStore:
    """Tests for S3ObjectStore against a mocked S3."""

    @pytest.fixture
    def s3_store(self, monkeypatch: pytest.MonkeyPatch) -> Iterator[S3ObjectStore]:
        """An S3ObjectStore backed by moto."""
        moto = pytest.importorskip("moto")
        import boto3

        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")

        with moto.mock_aws():
            boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="builds")
            yield S3ObjectStore(bucket="builds", region="us-east-1")

    def test_put_get_exists(self, s3_store: S3ObjectStore) -> None:
        """Objects round-trip through the bucket."""
        s3_store.put("Arena/release/1.0/version.json", b'{"version": "1.0"}', "application/json")
        assert s3_store.exists("Arena/release/1.0/version.json")
        assert s3_store.get("Arena/release/1.0/version.json") == b'{"version": "1.0"}'

    def test_missing_object(self, s3_store: S3ObjectStore) -> None:
        """Missing keys report absent and raise ObjectNotFoundError on get."""
        assert not s3_store.exists("missing")
        with pytest.raises(ObjectNotFoundError):
            s3_store.get("missing")

    def test_list_prefixes(self, s3_store: S3ObjectStore) -> None:
        """Common prefixes one level down are listed."""
        s3_store.put("Arena/release/1.0/manifest.json", b"{}")
        s3_store.put("Arena/release/2.0/manifest.json", b"{}")
        s3_store.put("Arena/release/arena_manifest.json", b"{}")
        assert s3_store.list_prefixes("Arena/release/") == ["1.0", "2.0"]

    def test_check(self, s3_store: S3ObjectStore) -> None:
        """check() succeeds for an existing bucket."""
        s3_store.check()
