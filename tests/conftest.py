"""Shared fixtures: SQLite catalog under tmp_path, in-memory blobs, fake enrichment."""

from __future__ import annotations

import io
from typing import Callable

import httpx
import pytest
from PIL import Image

from media_manager.catalog import CatalogStore
from media_manager.config import Settings
from media_manager.download import OriginalFetcher
from media_manager.enrichment import EnrichmentClient, EnrichmentError, EnrichmentResult
from media_manager.jobs import JobLedger
from media_manager.object_store import ObjectStore, StorageDeleteError
from media_manager.pipeline import EnrichEvent, MediaPipeline, ResizeEvent

CAT_RESULT = EnrichmentResult(
    tags=["cat", "outdoor"],
    title="A cat outdoors",
    description="A cat sitting on the grass outdoors.",
    alt_text="A grey cat sitting on green grass in a garden",
)


class MemoryObjectStore(ObjectStore):
    def __init__(self, public_base_url: str = "https://cdn.test/media") -> None:
        super().__init__(public_base_url)
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_delete = False

    def put(self, data: bytes, key: str, content_type: str) -> str:
        self.objects[key] = (data, content_type)
        return self.public_url(key)

    def delete(self, key: str) -> None:
        if self.fail_delete:
            raise StorageDeleteError(f"cannot delete {key}")
        self.objects.pop(key, None)


class FakeEnricher(EnrichmentClient):
    """Returns ``result`` after ``failures`` failed calls; ``failures=-1`` always fails."""

    name = "fake"

    def __init__(self, result: EnrichmentResult = CAT_RESULT, failures: int = 0) -> None:
        self.result = result
        self.failures = failures
        self.calls = 0

    def analyze(self, image_bytes: bytes) -> EnrichmentResult:
        self.calls += 1
        if not image_bytes:
            raise EnrichmentError("empty image")
        if self.failures < 0 or self.calls <= self.failures:
            raise EnrichmentError("provider unavailable")
        return self.result


class RecordingDispatcher:
    """Collects events instead of running them."""

    def __init__(self, on_enrich: Callable[[EnrichEvent], None] | None = None) -> None:
        self.resize_events: list[ResizeEvent] = []
        self.enrich_events: list[EnrichEvent] = []
        self._on_enrich = on_enrich

    def dispatch_resize(self, event: ResizeEvent) -> None:
        self.resize_events.append(event)

    def dispatch_enrich(self, event: EnrichEvent) -> None:
        self.enrich_events.append(event)
        if self._on_enrich is not None:
            self._on_enrich(event)


def make_image_bytes(size: tuple[int, int] = (1600, 1200), fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    color = (200, 120, 40, 255) if mode == "RGBA" else (200, 120, 40)
    buffer = io.BytesIO()
    Image.new(mode, size, color[: len(mode)]).save(buffer, format=fmt)
    return buffer.getvalue()


def fetcher_for(store: MemoryObjectStore) -> OriginalFetcher:
    def _handler(request: httpx.Request) -> httpx.Response:
        key = store.key_for_url(str(request.url))
        if key is None or key not in store.objects:
            return httpx.Response(404)
        return httpx.Response(200, content=store.objects[key][0])

    return OriginalFetcher(client=httpx.Client(transport=httpx.MockTransport(_handler)))


@pytest.fixture
def settings(tmp_path) -> Settings:
    cfg = Settings()
    cfg.databases.primary_url = f"sqlite:///{tmp_path / 'data' / 'media.db'}"
    cfg.storage.local_root = str(tmp_path / "objects")
    cfg.queues.eager = True
    return cfg


@pytest.fixture
def catalog(settings) -> CatalogStore:
    return CatalogStore(settings.databases.primary_url)


@pytest.fixture
def ledger(settings) -> JobLedger:
    return JobLedger(settings.databases.primary_url)


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def make_pipeline(settings, catalog, ledger, store):
    def _make(enricher: EnrichmentClient | None = None, dispatcher=None) -> MediaPipeline:
        return MediaPipeline(
            settings=settings,
            catalog=catalog,
            store=store,
            fetcher=fetcher_for(store),
            enricher=enricher or FakeEnricher(),
            ledger=ledger,
            dispatcher=dispatcher,
        )

    return _make
