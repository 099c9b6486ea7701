"""Publishing commands for the buildsync CLI.

Commands:
- publish: Upload a packaged build and publish its manifest
- promote: Make a published version the latest
- versions: List published versions
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from buildsync.client.cli.config import get_object_store_config, load_config

if TYPE_CHECKING:
    from buildsync.publisher.upload import UploadOrchestrator


def _make_orchestrator(config: dict[str, Any], progress: bool = False) -> UploadOrchestrator:
    from buildsync.publisher.storage import create_object_store
    from buildsync.publisher.upload import UploadOrchestrator, UploadProgress

    def on_progress(p: UploadProgress) -> None:
        click.echo(f"  [{p.done}/{p.total}] {p.key}")

    try:
        store = create_object_store(get_object_store_config(config))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    return UploadOrchestrator(
        store,
        progress_callback=on_progress if progress else None,
        base_url=config.get("base_url"),
    )


def _resolve_target(
    config: dict[str, Any],
    game_id: str | None,
    build_type: str | None,
) -> tuple[str, str]:
    game = game_id or config.get("game_id")
    if not game:
        click.echo("Error: No game id. Pass --game or run 'buildsync configure'.", err=True)
        sys.exit(1)
    return game, build_type or config.get("build_type") or "release"


@click.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--mode",
    type=click.Choice(["delta", "full"]),
    default="delta",
    show_default=True,
    help="Upload only what the latest published version lacks, or everything.",
)
@click.option("--require-complete", is_flag=True, help="Do not publish if any upload failed.")
@click.option("--no-progress", is_flag=True, help="Do not print each uploaded object.")
def publish(manifest_path: Path, mode: str, require_complete: bool, no_progress: bool) -> None:
    """Upload a packaged build and publish it as the latest version.

    MANIFEST_PATH is the manifest written by 'buildsync package'; its
    directory must hold the chunks/ and files/ output.
    """
    from buildsync.core.errors import BuildSyncError
    from buildsync.core.manifest import load_manifest
    from buildsync.publisher.packager import CHUNKS_DIR_NAME, FILES_DIR_NAME
    from buildsync.publisher.storage import ChunkStore

    config = load_config()
    orchestrator = _make_orchestrator(config, progress=not no_progress)

    try:
        manifest = load_manifest(manifest_path)
        previous = None
        if mode == "delta":
            previous = orchestrator.fetch_manifest(manifest.game_id, manifest.build_type)
            if previous is None:
                click.echo("No published version found; uploading everything.")

        output_dir = manifest_path.parent
        result = orchestrator.run(
            manifest,
            ChunkStore(output_dir / CHUNKS_DIR_NAME),
            files_root=output_dir / FILES_DIR_NAME,
            previous=previous,
            mode=mode,
            require_complete=require_complete,
        )
    except BuildSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for label, stats in (("Chunks", result.chunk_stats), ("Files", result.file_stats)):
        click.echo(
            f"{label}: {stats.uploaded} uploaded, {stats.skipped} skipped, {stats.failed} failed"
        )
    if result.published is None:
        click.echo("Cancelled; nothing published.", err=True)
        sys.exit(1)
    if result.failed:
        click.echo(f"Warning: {result.failed} uploads failed.", err=True)
    click.echo(f"Published {manifest.version} -> {result.published.latest_key}")


@click.command()
@click.argument("version")
@click.option("--game", "game_id", default=None, help="Game identifier.")
@click.option("--build-type", default=None, help="Build channel.")
def promote(version: str, game_id: str | None, build_type: str | None) -> None:
    """Make a published VERSION the latest."""
    from buildsync.core.errors import BuildSyncError
    from buildsync.publisher.storage import ObjectNotFoundError

    config = load_config()
    game, build = _resolve_target(config, game_id, build_type)
    orchestrator = _make_orchestrator(config)

    try:
        key = orchestrator.promote_version(game, build, version)
    except ObjectNotFoundError:
        click.echo(f"Error: Version {version} is not published for {game}/{build}.", err=True)
        sys.exit(1)
    except BuildSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Promoted {version} -> {key}")


@click.command()
@click.option("--game", "game_id", default=None, help="Game identifier.")
@click.option("--build-type", default=None, help="Build channel.")
def versions(game_id: str | None, build_type: str | None) -> None:
    """List published versions, newest first."""
    config = load_config()
    game, build = _resolve_target(config, game_id, build_type)
    orchestrator = _make_orchestrator(config)

    if not orchestrator.test_connection():
        click.echo(f"Error: Cannot reach {orchestrator.store.location}.", err=True)
        sys.exit(1)

    found = orchestrator.list_versions(game, build)
    if not found:
        click.echo(f"No published versions for {game}/{build}.")
        return
    latest = orchestrator.fetch_manifest(game, build)
    for version in found:
        marker = " (latest)" if latest is not None and latest.version == version else ""
        click.echo(f"{version}{marker}")
