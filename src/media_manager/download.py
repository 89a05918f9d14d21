"""Fetch original blobs over HTTP for the pipeline stages."""

from __future__ import annotations

import httpx

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "download"})


class DownloadError(RuntimeError):
    """Raised when an original is unreachable or answers with a non-2xx status."""


class OriginalFetcher:
    """Download original image bytes by URL.

    A shared :class:`httpx.Client` can be injected (tests pass one built on
    :class:`httpx.MockTransport`); otherwise a client is created lazily.
    """

    def __init__(self, client: httpx.Client | None = None, timeout: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=True)
        return self._client

    def fetch(self, url: str) -> bytes:
        if not url:
            raise DownloadError("Failed to download original file: empty URL")

        try:
            response = self._get_client().get(url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to download original file from {url}: {exc}") from exc

        if not response.is_success:
            raise DownloadError(
                f"Failed to download original file from {url}: {response.status_code} {response.reason_phrase}"
            )

        LOGGER.info("original_downloaded", extra={"url": url, "bytes": len(response.content)})
        return response.content

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


__all__ = ["DownloadError", "OriginalFetcher"]
