"""Configuration utilities for the buildsync CLI.

This module provides shared configuration functions used across CLI commands.
Settings live in ``~/.buildsync/config.json``; ``BUILDSYNC_*`` environment
variables take precedence over the file.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from buildsync.core.config import DownloadConfig, ObjectStoreConfig

# Environment variable -> config.json key
ENV_OVERRIDES = {
    "BUILDSYNC_STORAGE_TYPE": "storage_type",
    "BUILDSYNC_BUCKET": "bucket",
    "BUILDSYNC_ENDPOINT_URL": "endpoint_url",
    "BUILDSYNC_ACCOUNT_ID": "account_id",
    "BUILDSYNC_ACCESS_KEY": "access_key",
    "BUILDSYNC_SECRET_KEY": "secret_key",
    "BUILDSYNC_REGION": "region",
    "BUILDSYNC_STORAGE_PATH": "local_path",
    "BUILDSYNC_BASE_URL": "base_url",
    "BUILDSYNC_GAME_ID": "game_id",
    "BUILDSYNC_BUILD_TYPE": "build_type",
    "BUILDSYNC_TIMEOUT": "timeout",
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_config_dir() -> Path:
    """Get the configuration directory for buildsync.

    Returns:
        Path from BUILDSYNC_CONFIG_DIR, or ~/.buildsync.
    """
    override = os.environ.get("BUILDSYNC_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".buildsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config(apply_env: bool = True) -> dict[str, Any]:
    """Load configuration from the config file, then apply environment overrides."""
    config: dict[str, Any] = {}
    config_file = get_config_file()
    if config_file.exists():
        config = dict(json.loads(config_file.read_text()))
    if not apply_env:
        return config
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value
    return config


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_object_store_config(config: dict[str, Any] | None = None) -> ObjectStoreConfig:
    """Build the remote store configuration from loaded settings."""
    config = load_config() if config is None else config
    return ObjectStoreConfig(
        type=config.get("storage_type") or ("s3" if config.get("bucket") else "local"),
        bucket=config.get("bucket"),
        endpoint_url=config.get("endpoint_url"),
        account_id=config.get("account_id"),
        access_key=config.get("access_key"),
        secret_key=config.get("secret_key"),
        region=config.get("region") or "us-east-1",
        local_path=config.get("local_path"),
    )


def get_download_config(config: dict[str, Any] | None = None) -> DownloadConfig:
    """Build download tunables from loaded settings."""
    config = load_config() if config is None else config
    timeout = config.get("timeout")
    return DownloadConfig(timeout=float(timeout)) if timeout else DownloadConfig()


class StderrHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Stream handler that writes to whatever ``sys.stderr`` currently is."""

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    @property
    def stream(self) -> Any:  # type: ignore[override]
        return sys.stderr

    @stream.setter
    def stream(self, value: Any) -> None:
        pass


def configure_logging(verbose: bool = False) -> None:
    """Send buildsync log records to stderr.

    The level is DEBUG with ``verbose``, else BUILDSYNC_LOG_LEVEL, else WARNING.
    """
    level_name = "DEBUG" if verbose else os.environ.get("BUILDSYNC_LOG_LEVEL", "WARNING")
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.WARNING

    package_logger = logging.getLogger("buildsync")
    package_logger.setLevel(level)
    if not any(isinstance(h, StderrHandler) for h in package_logger.handlers):
        handler = StderrHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
