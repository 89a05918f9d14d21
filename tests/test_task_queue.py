"""Tests for Celery wiring of the pipeline stages."""

from __future__ import annotations

import pytest

from conftest import FakeEnricher, RecordingDispatcher, make_image_bytes
from media_manager import task_queue
from media_manager.jobs import Stage
from media_manager.pipeline import EnrichEvent, InlineDispatcher, ResizeEvent
from media_manager.status import MediaStatus


def test_celery_app_routes_stages_to_their_queues() -> None:
    conf = task_queue.celery_app.conf

    assert conf.task_routes[task_queue.RESIZE_TASK_NAME] == {"queue": "resize"}
    assert conf.task_routes[task_queue.ENRICH_TASK_NAME] == {"queue": "enrich"}
    assert conf.worker_prefetch_multiplier == 1
    assert conf.task_acks_late is True


def test_only_enrich_is_retried() -> None:
    assert task_queue.enrich_media.max_retries == 3
    assert task_queue.resize_media.name == task_queue.RESIZE_TASK_NAME
    assert task_queue.enrich_media.name == task_queue.ENRICH_TASK_NAME


def test_celery_dispatcher_uses_media_stage_task_ids(monkeypatch) -> None:
    sent: list[tuple[str, dict]] = []

    def _capture(name):
        def _apply_async(*, args, task_id):
            sent.append((name, {"args": args, "task_id": task_id}))

        return _apply_async

    monkeypatch.setattr(task_queue.resize_media, "apply_async", _capture("resize"))
    monkeypatch.setattr(task_queue.enrich_media, "apply_async", _capture("enrich"))

    dispatcher = task_queue.CeleryDispatcher()
    dispatcher.dispatch_resize(ResizeEvent("m1", "https://cdn.test/original/m1.jpg", "a.jpg", "image/jpeg"))
    dispatcher.dispatch_enrich(EnrichEvent("m1", "https://cdn.test/original/m1.jpg"))

    assert sent == [
        (
            "resize",
            {
                "args": [
                    {
                        "mediaId": "m1",
                        "originalUrl": "https://cdn.test/original/m1.jpg",
                        "filename": "a.jpg",
                        "mimetype": "image/jpeg",
                    }
                ],
                "task_id": "m1:resize",
            },
        ),
        (
            "enrich",
            {"args": [{"mediaId": "m1", "originalUrl": "https://cdn.test/original/m1.jpg"}], "task_id": "m1:enrich"},
        ),
    ]


def test_resize_task_runs_stage_and_dispatches_enrich(monkeypatch, make_pipeline) -> None:
    dispatcher = RecordingDispatcher()
    pipeline = make_pipeline(dispatcher=dispatcher)
    monkeypatch.setattr(task_queue, "build_pipeline", lambda: pipeline)
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    result = task_queue.resize_media.apply(args=[dispatcher.resize_events[0].to_payload()])

    assert result.get() == item.id
    assert pipeline.catalog.get(item.id).status == MediaStatus.RESIZED.value
    assert dispatcher.enrich_events == [EnrichEvent(item.id, item.original_url)]


def test_enrich_task_retries_through_celery_then_falls_back(monkeypatch, make_pipeline, ledger) -> None:
    enricher = FakeEnricher(failures=-1)
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    monkeypatch.setattr(task_queue, "build_pipeline", lambda: pipeline)
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    task_queue.enrich_media.apply(args=[EnrichEvent(item.id, item.original_url).to_payload()])

    assert enricher.calls == 4
    record = pipeline.catalog.get(item.id)
    assert record.status == MediaStatus.ENRICHED_FALLBACK.value
    assert record.tags == ["image"]
    assert ledger.get(item.id, Stage.ENRICH).attempts == 4


class _CrashingEnricher(FakeEnricher):
    def analyze(self, image_bytes: bytes):
        self.calls += 1
        raise KeyError("labels")


def test_enrich_task_retries_unexpected_errors(monkeypatch, make_pipeline, ledger) -> None:
    enricher = _CrashingEnricher()
    pipeline = make_pipeline(enricher=enricher, dispatcher=RecordingDispatcher())
    monkeypatch.setattr(task_queue, "build_pipeline", lambda: pipeline)
    item = pipeline.ingest(make_image_bytes(), "cat.jpg", "image/jpeg")

    task_queue.enrich_media.apply(args=[EnrichEvent(item.id, item.original_url).to_payload()])

    assert enricher.calls == 4
    assert pipeline.catalog.get(item.id).status == MediaStatus.ENRICHED_FALLBACK.value
    assert ledger.get(item.id, Stage.ENRICH).attempts == 4


@pytest.mark.parametrize(("eager", "dispatcher_type"), [(True, InlineDispatcher), (False, task_queue.CeleryDispatcher)])
def test_create_pipeline_selects_dispatcher(settings, eager, dispatcher_type) -> None:
    settings.queues.eager = eager

    pipeline = task_queue.create_pipeline(settings)

    assert isinstance(pipeline.dispatcher, dispatcher_type)
    assert pipeline.enricher.name == "blip"
