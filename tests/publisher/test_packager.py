"""Tests for packaging a build directory."""

import hashlib
import json
import random
from pathlib import Path

import pytest

from buildsync.core.config import ChunkerConfig
from buildsync.core.errors import PackagingError
from buildsync.core.manifest import load_manifest
from buildsync.publisher.packager import (
    PackageFilters,
    PackageStats,
    manifest_filename,
    package_build,
)
from buildsync.publisher.storage import ChunkStore

SMALL = ChunkerConfig(min_size=1024, avg_size=4096, max_size=16 * 1024)


def write(path: Path, data: bytes) -> Path:
    """Write a file, creating parents."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    """A small game build with files the packager should skip."""
    root = tmp_path / "build"
    rng = random.Random(7)
    write(root / "Game.exe", rng.randbytes(60 * 1024))
    write(root / "Content" / "pak0.pak", rng.randbytes(40 * 1024))
    write(root / "Config" / "game.ini", b"[Engine]\r\nFoo=1\r\n")
    write(root / "Saved" / "Logs" / "game.log", b"log")
    write(root / "Game.pdb", b"symbols")
    write(root / "version.json", b'{"version": "0.9"}')
    write(root / "manifest_release_0.9.txt", b"old")
    write(root / "ArenaLauncher.exe", b"launcher")
    return root


class TestPackageFilters:
    """Tests for file exclusion rules."""

    def test_default_exclusions(self) -> None:
        """Saved dirs, pdb files and launcher files are skipped."""
        filters = PackageFilters()
        assert filters.should_include("Game.exe")
        assert filters.should_include("Content/Saved.pak")
        assert not filters.should_include("Saved/Config/user.ini")
        assert not filters.should_include("Game/saved/x.sav")
        assert not filters.should_include("Binaries/Game.PDB")
        assert not filters.should_include("version.json")
        assert not filters.should_include("manifest_release_1.0.txt")
        assert not filters.should_include("MyLauncher.exe")

    def test_flags_disable_exclusions(self) -> None:
        """Saved and pdb rules can be turned off."""
        filters = PackageFilters(exclude_saved=False, exclude_pdb=False)
        assert filters.should_include("Saved/Config/user.ini")
        assert filters.should_include("Game.pdb")

    def test_patterns(self) -> None:
        """Extra patterns match the relative path or the file name."""
        filters = PackageFilters(patterns=["*.tmp", "Docs/*"])
        assert not filters.should_include("cache/file.tmp")
        assert not filters.should_include("Docs/readme.md")
        assert filters.should_include("readme.md")


class TestPackageBuild:
    """Tests for package_build."""

    def test_writes_manifest_chunks_and_files(self, build_dir: Path, tmp_path: Path) -> None:
        """Large files are chunked, small files copied whole."""
        output = tmp_path / "out"
        result = package_build(build_dir, output, "Arena", "1.0.0", chunker=SMALL)

        manifest = result.manifest
        assert [f.path for f in manifest.files] == ["Config/game.ini", "Content/pak0.pak", "Game.exe"]
        assert manifest.game_id == "Arena"
        assert manifest.build_type == "release"
        assert manifest.version == "1.0.0"

        exe = manifest.get_file("Game.exe")
        assert exe is not None and exe.is_chunked
        assert exe.total_size == 60 * 1024
        assert exe.checksum == hashlib.sha256((build_dir / "Game.exe").read_bytes()).hexdigest()

        ini = manifest.get_file("Config/game.ini")
        assert ini is not None and not ini.is_chunked
        assert ini.checksum == hashlib.sha256(b"[Engine]\nFoo=1").hexdigest()
        assert (output / "files" / "Config" / "game.ini").read_bytes() == b"[Engine]\r\nFoo=1\r\n"

        store = ChunkStore(output / "chunks")
        for chunk in manifest.all_chunks():
            assert store.has(chunk.hash)
        assert len(store) == result.stats.unique_chunks

    def test_chunks_reassemble_files(self, build_dir: Path, tmp_path: Path) -> None:
        """Stored chunks concatenate back to the source file."""
        result = package_build(build_dir, tmp_path / "out", "Arena", "1.0.0", chunker=SMALL)
        store = ChunkStore(result.chunks_dir)
        pak = result.manifest.get_file("Content/pak0.pak")
        assert pak is not None

        data = b"".join(store.get(h) for h in pak.chunk_hashes)
        assert data == (build_dir / "Content" / "pak0.pak").read_bytes()

    def test_manifest_and_version_files(self, build_dir: Path, tmp_path: Path) -> None:
        """The manifest and version pointer are written to the output."""
        output = tmp_path / "out"
        result = package_build(build_dir, output, "Arena", "2.1", build_type="beta", chunker=SMALL)

        assert result.manifest_path == output / manifest_filename("beta", "2.1")
        assert result.manifest_path.name == "manifest_beta_2.1.json"
        assert load_manifest(result.manifest_path) == result.manifest
        assert json.loads(result.version_path.read_text()) == {"version": "2.1"}

    def test_duplicate_content_stored_once(self, tmp_path: Path) -> None:
        """Identical files share their chunks."""
        source = tmp_path / "src"
        payload = random.Random(3).randbytes(30 * 1024)
        write(source / "a.pak", payload)
        write(source / "b.pak", payload)

        result = package_build(source, tmp_path / "out", "Arena", "1", chunker=SMALL)

        assert result.stats.total_chunks == 2 * result.stats.unique_chunks
        assert result.stats.deduplication_ratio == pytest.approx(0.5)

    def test_output_inside_source_is_skipped(self, tmp_path: Path) -> None:
        """Packaging into a subdirectory does not package the output."""
        source = tmp_path / "src"
        write(source / "a.txt", b"hello")
        output = source / "dist"
        write(output / "stale.txt", b"old output")

        result = package_build(source, output, "Arena", "1", chunker=SMALL)
        assert [f.path for f in result.manifest.files] == ["a.txt"]

    def test_progress_callback(self, build_dir: Path, tmp_path: Path) -> None:
        """Progress is reported once per packaged file."""
        calls: list[tuple[int, int, str]] = []
        package_build(
            build_dir,
            tmp_path / "out",
            "Arena",
            "1",
            chunker=SMALL,
            progress_callback=lambda done, total, path: calls.append((done, total, path)),
        )
        assert [c[0] for c in calls] == [1, 2, 3]
        assert {c[1] for c in calls} == {3}

    def test_missing_source_raises(self, tmp_path: Path) -> None:
        """A missing source directory is a packaging error."""
        with pytest.raises(PackagingError, match="not found"):
            package_build(tmp_path / "missing", tmp_path / "out", "Arena", "1")

    def test_empty_source_raises(self, tmp_path: Path) -> None:
        """A source with nothing to package is a packaging error."""
        source = tmp_path / "src"
        write(source / "Saved" / "only.sav", b"x")
        with pytest.raises(PackagingError, match="No files"):
            package_build(source, tmp_path / "out", "Arena", "1")

    def test_missing_version_raises(self, build_dir: Path, tmp_path: Path) -> None:
        """A version label is required."""
        with pytest.raises(PackagingError, match="Version"):
            package_build(build_dir, tmp_path / "out", "Arena", "")


class TestPackageStats:
    """Tests for packaging counters."""

    def test_ratio_without_chunks(self) -> None:
        """No chunks means a ratio of 1.0."""
        assert PackageStats().deduplication_ratio == 1.0
