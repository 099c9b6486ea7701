"""Client commands for the buildsync CLI.

Commands:
- check: Report which files of the latest build an install is missing
- sync: Download the latest build into an install
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from buildsync.client.cli.config import get_config_dir, get_download_config, load_config

if TYPE_CHECKING:
    from buildsync.client.api import BuildFetcher
    from buildsync.core.manifest import Manifest

manifest_url_option = click.option(
    "--manifest-url",
    default=None,
    help="Manifest URL (default: latest alias under the configured base URL).",
)
game_option = click.option("--game", "game_id", default=None, help="Game identifier.")
build_type_option = click.option("--build-type", default=None, help="Build channel.")


def _fetch_latest(
    fetcher: BuildFetcher,
    config: dict[str, Any],
    manifest_url: str | None,
    game_id: str | None,
    build_type: str | None,
) -> Manifest:
    from buildsync.core.errors import BuildSyncError

    try:
        if manifest_url:
            return fetcher.fetch_manifest_url(manifest_url)
        game = game_id or config.get("game_id")
        if not game or not fetcher.base_url:
            click.echo(
                "Error: Pass --manifest-url, or configure base_url and game_id.",
                err=True,
            )
            sys.exit(1)
        return fetcher.fetch_manifest(game, build_type or config.get("build_type") or "release")
    except BuildSyncError as e:
        click.echo(f"Error: Cannot fetch manifest: {e}", err=True)
        sys.exit(1)


@click.command()
@click.argument("install_path", type=click.Path(file_okay=False, path_type=Path))
@manifest_url_option
@game_option
@build_type_option
def check(
    install_path: Path,
    manifest_url: str | None,
    game_id: str | None,
    build_type: str | None,
) -> None:
    """Check whether INSTALL_PATH is up to date with the latest build."""
    from buildsync.client.api import BuildFetcher
    from buildsync.client.updates import check_for_updates
    from buildsync.core.manifest import format_bytes

    config = load_config()
    download_config = get_download_config(config)
    with BuildFetcher(config.get("base_url"), timeout=download_config.timeout) as fetcher:
        manifest = _fetch_latest(fetcher, config, manifest_url, game_id, build_type)

    result = check_for_updates(manifest, install_path)
    click.echo(f"Installed: {result.local_version}")
    click.echo(f"Latest:    {result.latest_version}")
    if not result.is_update_available:
        click.echo("Up to date.")
        return
    click.echo(
        f"Update available: {len(result.files_to_update)} files "
        f"({format_bytes(result.bytes_to_download)})"
    )
    for entry in result.files_to_update:
        click.echo(f"  {entry.path}")


@click.command()
@click.argument("install_path", type=click.Path(file_okay=False, path_type=Path))
@manifest_url_option
@game_option
@build_type_option
@click.option("--no-cache", is_flag=True, help="Do not keep downloaded chunks for later updates.")
@click.option("--no-progress", is_flag=True, help="Do not print each downloaded file.")
def sync(
    install_path: Path,
    manifest_url: str | None,
    game_id: str | None,
    build_type: str | None,
    no_cache: bool,
    no_progress: bool,
) -> None:
    """Download the latest build into INSTALL_PATH.

    Only missing or changed files are downloaded. Interrupt with Ctrl+C;
    the file in progress is discarded and completed files are kept.
    """
    from buildsync.client.api import BuildFetcher
    from buildsync.client.download import DownloadOrchestrator
    from buildsync.client.state import DownloadState
    from buildsync.core.manifest import format_bytes
    from buildsync.publisher.storage import ChunkStore

    config = load_config()
    download_config = get_download_config(config)
    cache = None if no_cache else ChunkStore(get_config_dir() / "cache")

    with BuildFetcher(config.get("base_url"), timeout=download_config.timeout) as fetcher:
        manifest = _fetch_latest(fetcher, config, manifest_url, game_id, build_type)
        orchestrator = DownloadOrchestrator(fetcher, config=download_config, chunk_cache=cache)

        reported = 0

        def on_state(state: DownloadState) -> None:
            nonlocal reported
            if state.files_downloaded > reported:
                reported = state.files_downloaded
                click.echo(
                    f"  ↓ [{state.files_downloaded}/{state.total_files}] "
                    f"{format_bytes(state.downloaded_bytes)}/{format_bytes(state.total_bytes)}"
                )

        if not no_progress:
            orchestrator.subscribe(on_state)

        try:
            result = orchestrator.sync(manifest, install_path)
        except KeyboardInterrupt:
            click.echo("Interrupted; completed files were kept.", err=True)
            sys.exit(130)

    if result is None or not result.success:
        error = result.error if result is not None else "download already running"
        click.echo(f"Error: {error}", err=True)
        sys.exit(1)
    click.echo(f"Up to date: {manifest.version} ({result.files_downloaded} files downloaded)")
