"""Configuration command for the buildsync CLI.

Commands:
- configure: Store object store, base URL and game defaults
"""

from __future__ import annotations

import click

from buildsync.client.cli.config import get_config_file, load_config, save_config

SETTINGS = (
    "storage_type",
    "bucket",
    "endpoint_url",
    "account_id",
    "access_key",
    "secret_key",
    "region",
    "local_path",
    "base_url",
    "game_id",
    "build_type",
    "timeout",
)


@click.command()
@click.option("--storage-type", type=click.Choice(["s3", "local"]), default=None, help="Remote store kind.")
@click.option("--bucket", default=None, help="Bucket name (s3).")
@click.option("--endpoint-url", default=None, help="Custom S3 endpoint URL.")
@click.option("--account-id", default=None, help="Cloudflare account id (R2 endpoint).")
@click.option("--access-key", default=None, help="Access key ID.")
@click.option("--secret-key", default=None, help="Secret access key.")
@click.option("--region", default=None, help="Region (use 'auto' for R2).")
@click.option("--local-path", default=None, help="Directory used as bucket (local).")
@click.option("--base-url", default=None, help="Public URL clients download from.")
@click.option("--game", "game_id", default=None, help="Default game identifier.")
@click.option("--build-type", default=None, help="Default build channel.")
@click.option("--timeout", type=float, default=None, help="HTTP timeout in seconds for downloads.")
@click.option("--show", is_flag=True, help="Print the current configuration.")
def configure(show: bool, **options: str | float | None) -> None:
    """Store settings in the buildsync config file."""
    config = load_config(apply_env=False)

    changed = False
    for key in SETTINGS:
        value = options.get(key)
        if value is not None:
            config[key] = value
            changed = True

    if changed:
        save_config(config)
        click.echo(f"Configuration saved to {get_config_file()}")

    if show or not changed:
        for key in SETTINGS:
            if key in config:
                value = "********" if key == "secret_key" else config[key]
                click.echo(f"{key}: {value}")
