"""Celery task wiring for the resize and enrich stages."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from celery import Celery, Task

from media_manager.catalog import CatalogStore
from media_manager.config import Settings, load_settings
from media_manager.download import OriginalFetcher
from media_manager.enrichment import build_enrichment_client
from media_manager.jobs import JobLedger, Stage, job_key
from media_manager.object_store import build_object_store
from media_manager.pipeline import EnrichEvent, MediaPipeline, ResizeEvent
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})

RESIZE_TASK_NAME = "media_manager.task_queue.resize_media"
ENRICH_TASK_NAME = "media_manager.task_queue.enrich_media"


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _init_celery() -> Celery:
    settings = _load_settings()
    app = Celery("media_manager")
    app.conf.update(
        broker_url=settings.queues.broker_url,
        result_backend=settings.queues.result_backend,
        worker_concurrency=settings.queues.default_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_default_queue=settings.queues.resize_queue,
        task_routes={
            RESIZE_TASK_NAME: {"queue": settings.queues.resize_queue},
            ENRICH_TASK_NAME: {"queue": settings.queues.enrich_queue},
        },
    )
    return app


celery_app = _init_celery()


class CeleryDispatcher:
    """Publish stage events as Celery tasks keyed by ``media_id:stage``."""

    def dispatch_resize(self, event: ResizeEvent) -> None:
        resize_media.apply_async(args=[event.to_payload()], task_id=job_key(event.media_id, Stage.RESIZE))
        LOGGER.info("resize_task_enqueued", extra={"media_id": event.media_id})

    def dispatch_enrich(self, event: EnrichEvent) -> None:
        enrich_media.apply_async(args=[event.to_payload()], task_id=job_key(event.media_id, Stage.ENRICH))
        LOGGER.info("enrich_task_enqueued", extra={"media_id": event.media_id})


def create_pipeline(settings: Settings) -> MediaPipeline:
    """Assemble a pipeline from settings.

    ``queues.eager`` selects the inline dispatcher, which runs both stages in
    the calling process; otherwise stages are published to Celery.
    """

    target = settings.databases.primary_url
    return MediaPipeline(
        settings=settings,
        catalog=CatalogStore(target),
        store=build_object_store(settings),
        fetcher=OriginalFetcher(timeout=settings.pipeline.download_timeout_seconds),
        enricher=build_enrichment_client(settings),
        ledger=JobLedger(target),
        dispatcher=None if settings.queues.eager else CeleryDispatcher(),
    )


@lru_cache(maxsize=1)
def build_pipeline() -> MediaPipeline:
    return create_pipeline(_load_settings())


@celery_app.task(name=RESIZE_TASK_NAME, acks_late=True)
def resize_media(payload: dict[str, Any]) -> str:
    """Stage 1: download, transcode, upload variants, then trigger enrichment.

    Failures are terminal; the task is not retried.
    """

    event = ResizeEvent.from_payload(payload)
    build_pipeline().resize_stage(event)
    return event.media_id


@celery_app.task(
    name=ENRICH_TASK_NAME,
    bind=True,
    acks_late=True,
    max_retries=_load_settings().pipeline.enrich_max_retries,
    default_retry_delay=_load_settings().queues.enrich_retry_delay_seconds,
)
def enrich_media(self: Task, payload: dict[str, Any]) -> str:
    """Stage 2: enrich, retrying through Celery until the fallback is written."""

    event = EnrichEvent.from_payload(payload)
    attempt = int(self.request.retries or 0)
    try:
        build_pipeline().enrich_stage(event, attempt=attempt, max_retries=self.max_retries)
    except Exception as exc:
        raise self.retry(exc=exc)
    return event.media_id


__all__ = [
    "CeleryDispatcher",
    "build_pipeline",
    "celery_app",
    "create_pipeline",
    "enrich_media",
    "resize_media",
]
