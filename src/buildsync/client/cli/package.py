"""Packaging commands for the buildsync CLI.

Commands:
- package: Chunk a build directory and write its manifest
- delta: Compare two manifest files
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from buildsync.client.cli.config import load_config

MB = 1024 * 1024


@click.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("output", type=click.Path(file_okay=False, path_type=Path))
@click.option("--game", "game_id", default=None, help="Game identifier (default: configured game_id).")
@click.option("--version", "version", required=True, help="Version label of this build.")
@click.option("--build-type", default=None, help="Build channel (default: release).")
@click.option("--min-size", type=int, default=5, show_default=True, help="Minimum chunk size in MB.")
@click.option("--avg-size", type=int, default=10, show_default=True, help="Average chunk size in MB.")
@click.option("--max-size", type=int, default=20, show_default=True, help="Maximum chunk size in MB.")
@click.option("--keep-pdb", is_flag=True, help="Include .pdb debug symbols.")
@click.option("--exclude", multiple=True, help="Extra pattern to exclude (repeatable).")
def package(
    source: Path,
    output: Path,
    game_id: str | None,
    version: str,
    build_type: str | None,
    min_size: int,
    avg_size: int,
    max_size: int,
    keep_pdb: bool,
    exclude: tuple[str, ...],
) -> None:
    """Package a build directory into chunks and a manifest.

    Files of at least --min-size MB are split into content-defined chunks
    under OUTPUT/chunks; smaller files are copied to OUTPUT/files.
    """
    from buildsync.core.config import ChunkerConfig
    from buildsync.core.errors import BuildSyncError
    from buildsync.core.manifest import format_bytes
    from buildsync.publisher.packager import PackageFilters, package_build

    config = load_config()
    game_id = game_id or config.get("game_id")
    if not game_id:
        click.echo("Error: No game id. Pass --game or run 'buildsync configure'.", err=True)
        sys.exit(1)

    try:
        chunker = ChunkerConfig(min_size * MB, avg_size * MB, max_size * MB)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    filters = PackageFilters(exclude_pdb=not keep_pdb, patterns=list(exclude))

    def on_progress(done: int, total: int, path: str) -> None:
        click.echo(f"  [{done}/{total}] {path}")

    try:
        result = package_build(
            source,
            output,
            game_id=game_id,
            version=version,
            build_type=build_type or config.get("build_type") or "release",
            chunker=chunker,
            filters=filters,
            progress_callback=on_progress,
        )
    except BuildSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    stats = result.stats
    click.echo(f"Manifest: {result.manifest_path}")
    click.echo(f"Files: {stats.files_processed} ({format_bytes(stats.total_size)})")
    click.echo(
        f"Chunks: {stats.total_chunks} total, {stats.unique_chunks} unique "
        f"(dedup ratio {stats.deduplication_ratio:.1%})"
    )


@click.command()
@click.argument("old_manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("new_manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def delta(old_manifest: Path, new_manifest: Path) -> None:
    """Show what changed between two manifest files."""
    from buildsync.core.errors import MalformedManifest
    from buildsync.core.manifest import format_bytes, load_manifest
    from buildsync.publisher.delta import detect_delta

    try:
        old = load_manifest(old_manifest)
        new = load_manifest(new_manifest)
    except MalformedManifest as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    result = detect_delta(old, new)
    click.echo(f"{result.old_version} -> {result.new_version}")
    click.echo(f"  New:       {len(result.new_files)}")
    click.echo(f"  Changed:   {len(result.changed_files)}")
    click.echo(f"  Unchanged: {len(result.unchanged_files)}")
    click.echo(f"  Deleted:   {len(result.deleted_files)}")
    click.echo(
        f"Upload: {len(result.chunks_to_upload)} chunks, {len(result.files_to_upload)} files "
        f"({format_bytes(result.upload_bytes)} of {format_bytes(result.total_new_bytes)})"
    )
    click.echo(f"Reused chunks: {result.chunks_reused}/{result.total_unique_chunks}")
    click.echo(f"Savings: {result.savings_ratio:.1%}")
