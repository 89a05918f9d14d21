"""End-to-end and per-stage tests for the two-stage processing pipeline."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from conftest import CAT_RESULT, FakeEnricher, RecordingDispatcher, make_image_bytes
from media_manager.download import DownloadError
from media_manager.enrichment import EnrichmentError, EnrichmentResult
from media_manager.jobs import JobStatus, Stage
from media_manager.pipeline import EnrichEvent, IngestError, ResizeEvent
from media_manager.status import MediaStatus
from media_manager.transcoder import TranscodeError


def _dimensions(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as image:
        return image.size


def test_successful_enrichment_end_to_end(make_pipeline, catalog, store) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(make_image_bytes((1600, 1200)), "cat.jpg", "image/jpeg")

    view = pipeline.status(item.id)
    assert view is not None
    assert view.processing is False
    record = view.record
    assert record.tags == ["cat", "outdoor"]
    assert record.title == "A cat outdoors"
    assert record.description == CAT_RESULT.description
    assert record.alt_text == CAT_RESULT.alt_text
    assert record.status == MediaStatus.ENRICHED.value
    assert record.medium_url.endswith(f"/medium/{item.id}.jpg")
    assert record.thumbnail_url.endswith(f"/thumbnail/{item.id}.jpg")
    assert enricher.calls == 1

    medium, medium_type = store.objects[f"medium/{item.id}.jpg"]
    thumbnail, _ = store.objects[f"thumbnail/{item.id}.jpg"]
    assert medium_type == "image/jpeg"
    assert _dimensions(medium) == (800, 600)
    assert _dimensions(thumbnail) == (200, 150)


def test_always_failing_enrichment_ends_in_fallback(make_pipeline, ledger) -> None:
    enricher = FakeEnricher(failures=-1)
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(make_image_bytes(), "broken.jpg", "image/jpeg")

    view = pipeline.status(item.id)
    assert view is not None
    assert view.processing is False
    assert view.record.tags == ["image"]
    assert view.record.title == "Uploaded Image"
    assert view.record.description == "Uploaded image"
    assert view.record.alt_text == "Uploaded image"
    assert view.record.status == MediaStatus.ENRICHED_FALLBACK.value
    assert enricher.calls == 4

    job = ledger.get(item.id, Stage.ENRICH)
    assert job is not None
    assert job.attempts == 4
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_message == "provider unavailable"


def test_enrichment_recovers_within_retry_budget(make_pipeline) -> None:
    enricher = FakeEnricher(failures=2)
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    record = pipeline.catalog.get(item.id)
    assert record.status == MediaStatus.ENRICHED.value
    assert record.tags == ["cat", "outdoor"]
    assert enricher.calls == 3


def test_record_is_processing_right_after_ingest(make_pipeline, store) -> None:
    dispatcher = RecordingDispatcher()
    pipeline = make_pipeline(dispatcher=dispatcher)

    item = pipeline.ingest(make_image_bytes(), "photo.png", "image/png")

    view = pipeline.status(item.id)
    assert view.processing is True
    assert view.record.status == MediaStatus.INGESTED.value
    assert view.record.tags == ["processing"]
    assert view.record.medium_url == ""
    assert f"original/{item.id}.png" in store.objects
    assert dispatcher.resize_events == [
        ResizeEvent(media_id=item.id, original_url=item.original_url, filename="photo.png", mimetype="image/png")
    ]


def test_enrich_is_dispatched_only_after_variants_are_committed(make_pipeline, catalog) -> None:
    seen_at_dispatch: list[tuple[str, str]] = []

    def _capture(event: EnrichEvent) -> None:
        record = catalog.get(event.media_id)
        seen_at_dispatch.append((record.status, record.medium_url))

    dispatcher = RecordingDispatcher(on_enrich=_capture)
    pipeline = make_pipeline(dispatcher=dispatcher)
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")

    assert pipeline.resize_stage(dispatcher.resize_events[0]) is True

    assert dispatcher.enrich_events == [EnrichEvent(media_id=item.id, original_url=item.original_url)]
    status, medium_url = seen_at_dispatch[0]
    assert status == MediaStatus.RESIZED.value
    assert medium_url.endswith(f"medium/{item.id}.jpg")
    assert pipeline.status(item.id).processing is True


def test_redelivered_resize_does_not_trigger_enrich_twice(make_pipeline, ledger) -> None:
    dispatcher = RecordingDispatcher()
    pipeline = make_pipeline(dispatcher=dispatcher)
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    event = dispatcher.resize_events[0]

    assert pipeline.resize_stage(event) is True
    assert pipeline.resize_stage(event) is False

    assert len(dispatcher.enrich_events) == 1
    assert ledger.get(item.id, Stage.RESIZE).attempts == 1


def test_resize_failure_is_terminal_and_recorded(make_pipeline, ledger, store) -> None:
    dispatcher = RecordingDispatcher()
    pipeline = make_pipeline(dispatcher=dispatcher)
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    store.objects.pop(f"original/{item.id}.jpg")

    with pytest.raises(DownloadError):
        pipeline.resize_stage(dispatcher.resize_events[0])

    view = pipeline.status(item.id)
    assert view.processing is True
    assert view.record.status == MediaStatus.INGESTED.value
    assert dispatcher.enrich_events == []

    job = ledger.get(item.id, Stage.RESIZE)
    assert job.status == JobStatus.FAILED.value
    assert "404" in job.error_message
    assert [row.media_id for row in ledger.list_jobs(status=JobStatus.FAILED)] == [item.id]


def test_undecodable_upload_stays_ingested_without_enrichment(make_pipeline, ledger) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(b"definitely not an image", "fake.jpg", "image/jpeg")

    assert pipeline.status(item.id).record.status == MediaStatus.INGESTED.value
    assert enricher.calls == 0
    assert ledger.get(item.id, Stage.RESIZE).status == JobStatus.FAILED.value
    assert ledger.get(item.id, Stage.ENRICH) is None


def test_single_enrich_attempt_raises_while_budget_remains(make_pipeline, ledger) -> None:
    enricher = FakeEnricher(failures=-1)
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    event = EnrichEvent(media_id=item.id, original_url=item.original_url)

    with pytest.raises(EnrichmentError):
        pipeline.enrich_stage(event, attempt=0, max_retries=3)

    assert enricher.calls == 1
    assert pipeline.status(item.id).processing is True
    assert ledger.get(item.id, Stage.ENRICH).status == JobStatus.RETRYING.value


def test_last_enrich_attempt_writes_fallback_without_raising(make_pipeline) -> None:
    enricher = FakeEnricher(failures=-1)
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    event = EnrichEvent(media_id=item.id, original_url=item.original_url)

    assert pipeline.enrich_stage(event, attempt=3, max_retries=3) == MediaStatus.ENRICHED_FALLBACK
    assert enricher.calls == 1
    assert pipeline.status(item.id).processing is False


def test_enrich_stage_is_idempotent(make_pipeline) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    event = EnrichEvent(media_id=item.id, original_url=item.original_url)

    pipeline.enrich_stage(event)
    first = pipeline.catalog.get(item.id)
    pipeline.enrich_stage(event)
    second = pipeline.catalog.get(item.id)

    assert enricher.calls == 2
    for field in ("tags", "title", "description", "alt_text", "status"):
        assert getattr(first, field) == getattr(second, field)


def test_missing_original_during_enrich_counts_as_failure(make_pipeline, store) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    item = pipeline.ingest(make_image_bytes(), "photo.jpg", "image/jpeg")
    store.objects.clear()
    event = EnrichEvent(media_id=item.id, original_url=item.original_url)

    with pytest.raises(DownloadError):
        pipeline.enrich_stage(event, attempt=1, max_retries=3)
    assert pipeline.enrich_stage(event, attempt=3, max_retries=3) == MediaStatus.ENRICHED_FALLBACK
    assert enricher.calls == 0


def test_enrich_for_deleted_record_is_a_no_op(make_pipeline) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())

    assert pipeline.enrich_stage(EnrichEvent(media_id="missing", original_url="https://cdn.test/x.jpg")) is None
    assert enricher.calls == 0


@pytest.mark.parametrize(
    ("data", "mimetype"),
    [(b"", "image/jpeg"), (b"%PDF-1.4", "application/pdf")],
)
def test_ingest_rejects_invalid_uploads(make_pipeline, store, data, mimetype) -> None:
    pipeline = make_pipeline()

    with pytest.raises(IngestError):
        pipeline.ingest(data, "upload.bin", mimetype)
    assert store.objects == {}


def test_ingest_rejects_oversized_uploads(make_pipeline, settings, store) -> None:
    settings.web.max_upload_bytes = 10
    pipeline = make_pipeline()

    with pytest.raises(IngestError):
        pipeline.ingest(make_image_bytes((32, 32)), "small.jpg", "image/jpeg")
    assert store.objects == {}


def test_metadata_edit_never_flips_back_to_processing(make_pipeline) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    updated = pipeline.update_metadata(item.id, {"tags": ["processing", "pet", "pet"], "description": "Our cat"})

    assert updated.tags == ["pet"]
    assert updated.description == "Our cat"
    assert pipeline.status(item.id).processing is False


def test_update_metadata_validates_input(make_pipeline) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    with pytest.raises(ValueError):
        pipeline.update_metadata(item.id, {})
    with pytest.raises(ValueError):
        pipeline.update_metadata(item.id, {"tags": "cat"})
    assert pipeline.update_metadata("unknown", {"description": "x"}) is None


def test_edit_with_replacement_image_swaps_all_urls(make_pipeline, store) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    edited = pipeline.edit(
        item.id,
        {"title": "Cropped cat", "description": "", "alt_text": "A cropped cat", "tags": ["cat", "processing"]},
        image=make_image_bytes((1000, 2000), fmt="PNG"),
        filename="crop.png",
        mimetype="image/png",
    )

    assert edited.title == "Cropped cat"
    assert edited.description is None
    assert edited.tags == ["cat"]
    assert edited.original_url.endswith(f"original/{item.id}-edited.png")
    assert edited.medium_url.endswith(f"medium/{item.id}-edited.png")
    assert edited.thumbnail_url.endswith(f"thumbnail/{item.id}-edited.png")

    medium, content_type = store.objects[f"medium/{item.id}-edited.png"]
    assert content_type == "image/png"
    assert _dimensions(medium) == (400, 800)
    assert pipeline.status(item.id).processing is False


def test_edit_unknown_media_returns_none(make_pipeline) -> None:
    assert make_pipeline().edit("unknown", {"title": "x"}) is None


def test_edit_with_image_deletes_superseded_blobs(make_pipeline, store) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    pipeline.edit(item.id, {"title": "New"}, image=make_image_bytes((300, 300)), filename="new.jpg")

    assert set(store.objects) == {
        f"original/{item.id}-edited.jpg",
        f"medium/{item.id}-edited.jpg",
        f"thumbnail/{item.id}-edited.jpg",
    }


def test_placeholder_description_is_rejected_on_edit(make_pipeline, store) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")
    keys_before = set(store.objects)

    with pytest.raises(ValueError):
        pipeline.edit(item.id, {"description": "Processing..."}, image=make_image_bytes((300, 300)), filename="new.jpg")
    with pytest.raises(ValueError):
        pipeline.update_metadata(item.id, {"description": "Processing..."})

    assert set(store.objects) == keys_before
    assert pipeline.status(item.id).processing is False


def test_delete_removes_record_and_every_blob(make_pipeline, store) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")
    pipeline.edit(item.id, {"title": "New"}, image=make_image_bytes((300, 300)), filename="new.jpg")

    assert pipeline.delete(item.id) is True

    assert pipeline.catalog.get(item.id) is None
    assert store.objects == {}
    assert pipeline.delete(item.id) is False


def test_delete_survives_blob_failures(make_pipeline, store) -> None:
    pipeline = make_pipeline()
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")
    store.fail_delete = True

    assert pipeline.delete(item.id) is True
    assert pipeline.catalog.get(item.id) is None
    assert f"original/{item.id}.jpg" in store.objects


class _CrashingEnricher(FakeEnricher):
    def analyze(self, image_bytes: bytes) -> EnrichmentResult:
        self.calls += 1
        raise TypeError("unexpected response shape")


def test_unexpected_enricher_errors_still_end_in_fallback(make_pipeline, ledger) -> None:
    enricher = _CrashingEnricher()
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    view = pipeline.status(item.id)
    assert view.processing is False
    assert view.record.status == MediaStatus.ENRICHED_FALLBACK.value
    assert enricher.calls == 4
    job = ledger.get(item.id, Stage.ENRICH)
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_message == "unexpected response shape"


def test_unexpected_error_on_last_enrich_attempt_does_not_escape(make_pipeline) -> None:
    pipeline = make_pipeline(enricher=_CrashingEnricher(), dispatcher=RecordingDispatcher())
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")
    event = EnrichEvent(media_id=item.id, original_url=item.original_url)

    with pytest.raises(TypeError):
        pipeline.enrich_stage(event, attempt=2, max_retries=3)
    assert pipeline.enrich_stage(event, attempt=3, max_retries=3) == MediaStatus.ENRICHED_FALLBACK
    assert pipeline.status(item.id).processing is False


def test_sentinel_tags_in_enrichment_output_are_stripped(make_pipeline) -> None:
    result = EnrichmentResult(tags=["food", "processing"], title="Lunch", description="A plate of food.", alt_text="Food")
    pipeline = make_pipeline(enricher=FakeEnricher(result=result))

    item = pipeline.ingest(make_image_bytes(), "lunch.jpg", "image/jpeg")

    view = pipeline.status(item.id)
    assert view.record.tags == ["food"]
    assert view.record.status == MediaStatus.ENRICHED.value
    assert view.processing is False


@pytest.mark.parametrize(
    "result",
    [
        EnrichmentResult(tags=["processing"], title="Lunch", description="A plate of food.", alt_text="Food"),
        EnrichmentResult(tags=["food"], title="Lunch", description="Processing...", alt_text="Food"),
    ],
)
def test_placeholder_enrichment_output_ends_in_fallback(make_pipeline, result) -> None:
    enricher = FakeEnricher(result=result)
    pipeline = make_pipeline(enricher=enricher)

    item = pipeline.ingest(make_image_bytes(), "lunch.jpg", "image/jpeg")

    view = pipeline.status(item.id)
    assert view.record.status == MediaStatus.ENRICHED_FALLBACK.value
    assert view.record.tags == ["image"]
    assert view.processing is False
    assert enricher.calls == 4


def test_unexpected_resize_error_is_recorded_as_failed(make_pipeline, ledger, monkeypatch) -> None:
    enricher = FakeEnricher()
    pipeline = make_pipeline(enricher=enricher)

    def _explode(url: str) -> bytes:
        raise RuntimeError("connection pool exhausted")

    monkeypatch.setattr(pipeline.fetcher, "fetch", _explode)

    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    assert pipeline.status(item.id).record.status == MediaStatus.INGESTED.value
    assert enricher.calls == 0
    job = ledger.get(item.id, Stage.RESIZE)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == "connection pool exhausted"


def test_decompression_bomb_fails_resize_stage(make_pipeline, ledger, monkeypatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    dispatcher = RecordingDispatcher()
    pipeline = make_pipeline(dispatcher=dispatcher)
    item = pipeline.ingest(make_image_bytes((200, 200)), "big.jpg", "image/jpeg")

    with pytest.raises(TranscodeError):
        pipeline.resize_stage(dispatcher.resize_events[0])

    assert ledger.get(item.id, Stage.RESIZE).status == JobStatus.FAILED.value
    assert dispatcher.enrich_events == []
