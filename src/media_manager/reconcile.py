"""Client-side reconciliation: poll processing records until they settle.

Each tracked media id gets its own polling thread. A thread asks for the
record's status every :data:`POLL_INTERVAL_SECONDS`, merges the first result
that is no longer processing into the local view and stops. It also stops
after :data:`POLL_TIMEOUT_SECONDS` or on the first lookup error; neither case
raises.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import httpx

from media_manager.catalog import CatalogStore, record_to_payload
from media_manager.status import is_processing_payload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "reconcile"})

POLL_INTERVAL_SECONDS = 3.0
POLL_TIMEOUT_SECONDS = 300.0

T = TypeVar("T")


class StatusLookupError(RuntimeError):
    """Raised when a status lookup cannot be completed."""


def wait_for_predicate(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    timeout: float = POLL_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T | None:
    """Call ``fetch`` every ``interval`` seconds until ``done`` accepts a value.

    The first call happens one interval after start; calls scheduled at or
    after ``timeout`` are not made. Returns the accepted value, or ``None``
    on timeout. Exceptions raised by ``fetch`` propagate.
    """

    if interval <= 0:
        raise ValueError("interval must be positive")

    start = clock()
    deadline = start + timeout
    next_at = start + interval
    while next_at < deadline:
        delay = next_at - clock()
        if delay > 0:
            sleep(delay)
        value = fetch()
        if done(value):
            return value
        next_at += interval
    return None


@dataclass(frozen=True)
class StatusResponse:
    media: dict[str, Any] = field(default_factory=dict)
    processing: bool = True


class StatusLookup(Protocol):
    def __call__(self, media_id: str) -> StatusResponse: ...


class HttpStatusLookup:
    """Query ``GET /api/media/<id>/status`` on a running API server."""

    def __init__(self, base_url: str, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the HTTP client unless it was supplied by the caller."""

        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpStatusLookup:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __call__(self, media_id: str) -> StatusResponse:
        url = f"{self._base_url}/api/media/{media_id}/status"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise StatusLookupError(f"Status request for {media_id} failed: {exc}") from exc

        if not response.is_success:
            raise StatusLookupError(f"Status request for {media_id} answered {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise StatusLookupError(f"Status response for {media_id} is not JSON") from exc

        media = body.get("media") if isinstance(body, dict) else None
        if not isinstance(media, dict):
            raise StatusLookupError(f"Status response for {media_id} has no media record")

        processing = body.get("processing")
        if not isinstance(processing, bool):
            processing = is_processing_payload(media)
        return StatusResponse(media=media, processing=processing)


class CatalogStatusLookup:
    """Answer status lookups straight from the catalog database."""

    def __init__(self, catalog: CatalogStore) -> None:
        self._catalog = catalog

    def __call__(self, media_id: str) -> StatusResponse:
        view = self._catalog.status(media_id)
        if view is None:
            raise StatusLookupError(f"Media not found: {media_id}")
        return StatusResponse(media=record_to_payload(view.record), processing=view.processing)


class ReconciliationLoop:
    """Track in-flight media ids and keep a local view of their records.

    ``records`` is the local catalog view; settled records replace the
    placeholder passed to :meth:`track`.
    """

    def __init__(
        self,
        lookup: StatusLookup,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_settled: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self._lookup = lookup
        self._interval = interval
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._on_settled = on_settled
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._threads: dict[str, threading.Thread] = {}

    @property
    def records(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return dict(self._records)

    def active(self) -> list[str]:
        with self._lock:
            return [media_id for media_id, thread in self._threads.items() if thread.is_alive()]

    def track(self, media_id: str, record: dict[str, Any] | None = None) -> threading.Thread:
        """Start polling ``media_id`` unless a poller for it is already running."""

        with self._lock:
            if record is not None:
                self._records[media_id] = dict(record)
            existing = self._threads.get(media_id)
            if existing is not None and existing.is_alive():
                return existing

            thread = threading.Thread(target=self._poll, args=(media_id,), name=f"poll-{media_id}", daemon=True)
            self._threads[media_id] = thread
        thread.start()
        return thread

    def wait(self, timeout: float | None = None) -> None:
        """Join every polling thread started so far."""

        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def _poll(self, media_id: str) -> None:
        try:
            result = wait_for_predicate(
                lambda: self._lookup(media_id),
                lambda response: not response.processing,
                interval=self._interval,
                timeout=self._timeout,
                clock=self._clock,
                sleep=self._sleep,
            )
        except StatusLookupError as exc:
            LOGGER.error("status_poll_error", extra={"media_id": media_id, "error": str(exc)})
            return

        if result is None:
            LOGGER.warning("status_poll_timeout", extra={"media_id": media_id, "timeout_seconds": self._timeout})
            return

        with self._lock:
            merged = dict(self._records.get(media_id, {}))
            merged.update(result.media)
            self._records[media_id] = merged

        LOGGER.info("status_poll_settled", extra={"media_id": media_id, "status": result.media.get("status")})
        if self._on_settled is not None:
            self._on_settled(media_id, merged)


__all__ = [
    "POLL_INTERVAL_SECONDS",
    "POLL_TIMEOUT_SECONDS",
    "CatalogStatusLookup",
    "HttpStatusLookup",
    "ReconciliationLoop",
    "StatusLookupError",
    "StatusResponse",
    "wait_for_predicate",
]
