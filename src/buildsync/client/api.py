"""HTTP client for published builds.

This module provides:
- BuildFetcher: HTTP client for manifests, chunks and whole files
- resolve_url: Turn a manifest locator into an absolute URL
- StreamedBody: Blocks of a whole-file download with its announced size
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import httpx

from buildsync.core.errors import TransferError
from buildsync.core.keys import latest_manifest_key, manifest_key
from buildsync.core.manifest import Manifest, parse_manifest

logger = logging.getLogger(__name__)


class APIError(TransferError):
    """Unexpected HTTP status from the build host."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(APIError):
    """Resource not found."""


def resolve_url(locator: str, base_url: str | None) -> str:
    """Resolve a manifest locator against a base URL.

    Absolute http(s) locators are returned unchanged; relative object keys
    are joined onto ``base_url``.

    Raises:
        TransferError: If the locator is relative and no base URL is known.
    """
    if locator.startswith(("http://", "https://")):
        return locator
    if not base_url:
        raise TransferError(f"No base URL to resolve {locator}")
    return f"{base_url.rstrip('/')}/{locator.lstrip('/')}"


class BuildFetcher:
    """HTTP client for the public side of the build bucket."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            base_url: Public URL of the bucket; relative locators resolve
                against it.
            timeout: Request timeout in seconds.
            client: Optional preconfigured httpx client.
        """
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    @property
    def base_url(self) -> str | None:
        """Return the default base URL."""
        return self._base_url

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> BuildFetcher:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle response and raise appropriate exceptions."""
        if response.status_code == 404:
            raise NotFoundError(f"Not found: {response.request.url}", 404)
        if response.status_code >= 400:
            raise APIError(
                f"HTTP {response.status_code} for {response.request.url}",
                response.status_code,
            )
        return response

    def _get(self, url: str) -> httpx.Response:
        try:
            response = self._client.get(url)
        except httpx.RequestError as e:
            raise TransferError(f"Request to {url} failed: {e}") from e
        return self._handle_response(response)

    # === Manifests ===

    def fetch_manifest_url(self, url: str) -> Manifest:
        """Fetch and parse a manifest from an absolute URL.

        Raises:
            NotFoundError: If the manifest does not exist.
            MalformedManifest: If the document is invalid.
        """
        response = self._get(url)
        manifest = parse_manifest(response.content)
        logger.debug(f"Fetched manifest {manifest.version} from {url}")
        return manifest

    def fetch_manifest(
        self,
        game_id: str,
        build_type: str = "release",
        version: str | None = None,
    ) -> Manifest:
        """Fetch a published manifest by key.

        Args:
            game_id: Game identifier.
            build_type: Build channel.
            version: Version to fetch; None fetches the latest alias.
        """
        key = (
            manifest_key(game_id, build_type, version)
            if version
            else latest_manifest_key(game_id, build_type)
        )
        return self.fetch_manifest_url(resolve_url(key, self._base_url))

    # === Payloads ===

    def fetch_chunk(self, locator: str, base_url: str | None = None) -> bytes:
        """Download a chunk payload.

        Args:
            locator: Chunk URL or object key.
            base_url: Base URL overriding the fetcher default.

        Returns:
            Chunk payload.

        Raises:
            NotFoundError: If the chunk does not exist.
            TransferError: On network failure.
        """
        url = resolve_url(locator, base_url or self._base_url)
        return self._get(url).content

    @contextmanager
    def stream_file(
        self,
        locator: str,
        base_url: str | None = None,
        block_size: int = 64 * 1024,
    ) -> Iterator[StreamedBody]:
        """Stream a whole-file payload.

        The yielded body iterates over blocks and carries the announced
        ``size`` (Content-Length), or None when the host does not send one.

        Usage:
            with fetcher.stream_file(url) as blocks:
                for block in blocks:
                    ...

        Raises:
            NotFoundError: If the file does not exist.
            TransferError: On network failure.
        """
        url = resolve_url(locator, base_url or self._base_url)
        try:
            with self._client.stream("GET", url) as response:
                self._handle_response(response)
                yield StreamedBody(response, block_size, url)
        except httpx.RequestError as e:
            raise TransferError(f"Request to {url} failed: {e}") from e


class StreamedBody:
    """Blocks of a streamed response together with its announced size."""

    def __init__(self, response: httpx.Response, block_size: int, url: str) -> None:
        length = response.headers.get("Content-Length", "")
        self.size: int | None = int(length) if length.isdigit() else None
        self._blocks = response.iter_bytes(block_size)
        self._url = url

    def __iter__(self) -> StreamedBody:
        return self

    def __next__(self) -> bytes:
        try:
            return next(self._blocks)
        except httpx.RequestError as e:
            raise TransferError(f"Download of {self._url} interrupted: {e}") from e

