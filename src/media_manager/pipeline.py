"""Two-stage media processing pipeline: ingest, resize-and-link, enrich.

Ingest stores the original, inserts a placeholder record carrying the
processing sentinels and dispatches the resize stage. The resize stage writes
the variant URLs and, once that write is committed, dispatches the enrich
stage. The enrich stage replaces every sentinel with model output, or with the
configured fallback once its retry budget is spent.

Stages are plain methods so the Celery tasks in :mod:`media_manager.task_queue`
and :class:`InlineDispatcher` share one implementation.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from media_manager.catalog import CatalogStore, StatusView
from media_manager.config import Settings
from media_manager.db import MediaItem
from media_manager.download import DownloadError, OriginalFetcher
from media_manager.enrichment import EnrichmentClient, EnrichmentError
from media_manager.jobs import JobLedger, JobStatus, Stage
from media_manager.object_store import ObjectStore, StorageWriteError, Variant, delete_quietly, key_for
from media_manager.status import PROCESSING_DESCRIPTION, MediaSource, MediaStatus, strip_sentinel_tags
from media_manager.transcoder import (
    TranscodeError,
    content_type_for,
    file_extension,
    generate_variants,
    image_format_for,
)
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "pipeline"})

# Failures the resize stage expects; anything else is logged with a traceback.
RESIZE_ERRORS: tuple[type[Exception], ...] = (DownloadError, TranscodeError, StorageWriteError)

_EDIT_SUFFIX = "edited"


class IngestError(ValueError):
    """Raised when an upload is rejected before anything is stored."""


def _check_settled_description(fields: Mapping[str, Any]) -> None:
    if fields.get("description") == PROCESSING_DESCRIPTION:
        raise ValueError(f"Description cannot be {PROCESSING_DESCRIPTION!r}")


@dataclass(frozen=True)
class ResizeEvent:
    media_id: str
    original_url: str
    filename: str
    mimetype: str

    def to_payload(self) -> dict[str, str]:
        return {
            "mediaId": self.media_id,
            "originalUrl": self.original_url,
            "filename": self.filename,
            "mimetype": self.mimetype,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ResizeEvent:
        return cls(
            media_id=str(payload["mediaId"]),
            original_url=str(payload["originalUrl"]),
            filename=str(payload.get("filename") or ""),
            mimetype=str(payload.get("mimetype") or ""),
        )


@dataclass(frozen=True)
class EnrichEvent:
    media_id: str
    original_url: str

    def to_payload(self) -> dict[str, str]:
        return {"mediaId": self.media_id, "originalUrl": self.original_url}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> EnrichEvent:
        return cls(media_id=str(payload["mediaId"]), original_url=str(payload["originalUrl"]))


class Dispatcher(Protocol):
    """Hands stage events to whatever runs them."""

    def dispatch_resize(self, event: ResizeEvent) -> None: ...

    def dispatch_enrich(self, event: EnrichEvent) -> None: ...


class InlineDispatcher:
    """Run stages synchronously in the calling thread.

    The enrich stage is retried here exactly as the job runtime would retry
    it: up to ``max_retries`` additional attempts, the last of which writes
    the fallback instead of raising. Resize failures are terminal and only
    logged, mirroring a failed task in the queue.
    """

    def __init__(self, pipeline: MediaPipeline, max_retries: int) -> None:
        self._pipeline = pipeline
        self._max_retries = max(0, max_retries)

    def dispatch_resize(self, event: ResizeEvent) -> None:
        try:
            self._pipeline.resize_stage(event)
        except Exception as exc:
            LOGGER.warning(
                "inline_resize_failed",
                extra={"media_id": event.media_id, "error_type": type(exc).__name__, "error": str(exc)},
            )

    def dispatch_enrich(self, event: EnrichEvent) -> None:
        for attempt in range(self._max_retries + 1):
            try:
                self._pipeline.enrich_stage(event, attempt=attempt, max_retries=self._max_retries)
                return
            except Exception:
                if attempt >= self._max_retries:
                    raise


class MediaPipeline:
    """Coordinate the catalog, object store, fetcher and enrichment client."""

    def __init__(
        self,
        settings: Settings,
        catalog: CatalogStore,
        store: ObjectStore,
        fetcher: OriginalFetcher,
        enricher: EnrichmentClient,
        ledger: JobLedger,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.store = store
        self.fetcher = fetcher
        self.enricher = enricher
        self.ledger = ledger
        self.dispatcher: Dispatcher = (
            dispatcher if dispatcher is not None else InlineDispatcher(self, settings.pipeline.enrich_max_retries)
        )

    def ingest(
        self,
        data: bytes,
        filename: str,
        mimetype: str,
        source: MediaSource | str = MediaSource.LOCAL,
    ) -> MediaItem:
        """Store the original, insert the placeholder record and dispatch resizing."""

        if not data:
            raise IngestError("No file uploaded")
        if not mimetype or not mimetype.startswith("image/"):
            raise IngestError("Only image files are allowed")
        max_bytes = self.settings.web.max_upload_bytes
        if len(data) > max_bytes:
            raise IngestError(f"File exceeds the {max_bytes} byte upload limit")

        media_id = str(uuid.uuid4())
        key = key_for(media_id, Variant.ORIGINAL, file_extension(filename))
        original_url = self.store.put(data, key, mimetype)
        item = self.catalog.insert_placeholder(media_id, original_url, source=MediaSource(source))

        LOGGER.info(
            "media_ingested",
            extra={"media_id": media_id, "key": key, "bytes": len(data), "source": item.source},
        )
        self.dispatcher.dispatch_resize(
            ResizeEvent(media_id=media_id, original_url=original_url, filename=filename, mimetype=mimetype)
        )
        return item

    def resize_stage(self, event: ResizeEvent) -> bool:
        """Produce and link the medium and thumbnail variants.

        Returns ``False`` when the stage was skipped: the record is gone or a
        previous delivery already completed it. Failures are recorded in the
        job ledger and re-raised; they are never retried.
        """

        media_id = event.media_id
        if self.ledger.is_completed(media_id, Stage.RESIZE):
            LOGGER.info("resize_stage_already_completed", extra={"media_id": media_id})
            return False
        if self.catalog.get(media_id) is None:
            LOGGER.warning("resize_stage_media_missing", extra={"media_id": media_id})
            return False

        attempt = self.ledger.start(media_id, Stage.RESIZE)
        try:
            data = self.fetcher.fetch(event.original_url)
            fmt = image_format_for(event.filename)
            ext = file_extension(event.filename)
            variants = generate_variants(data, fmt)
            content_type = content_type_for(fmt)
            medium_url = self.store.put(variants.medium, key_for(media_id, Variant.MEDIUM, ext), content_type)
            thumbnail_url = self.store.put(variants.thumbnail, key_for(media_id, Variant.THUMBNAIL, ext), content_type)
        except Exception as exc:
            self.ledger.finish(media_id, Stage.RESIZE, JobStatus.FAILED, error_message=str(exc) or type(exc).__name__)
            LOGGER.error(
                "resize_stage_failed",
                extra={"media_id": media_id, "attempt": attempt, "error_type": type(exc).__name__, "error": str(exc)},
                exc_info=not isinstance(exc, RESIZE_ERRORS),
            )
            raise

        if not self.catalog.apply_variants(media_id, medium_url, thumbnail_url):
            self.ledger.finish(media_id, Stage.RESIZE, JobStatus.FAILED, error_message="media record deleted")
            LOGGER.warning("resize_stage_media_missing", extra={"media_id": media_id})
            return False

        LOGGER.info(
            "resize_stage_complete",
            extra={"media_id": media_id, "medium_bytes": len(variants.medium), "thumbnail_bytes": len(variants.thumbnail)},
        )
        self.dispatcher.dispatch_enrich(EnrichEvent(media_id=media_id, original_url=event.original_url))
        self.ledger.finish(media_id, Stage.RESIZE, JobStatus.COMPLETED)
        return True

    def enrich_stage(self, event: EnrichEvent, attempt: int = 0, max_retries: int | None = None) -> MediaStatus | None:
        """Run enrichment and write its result over the sentinels.

        ``attempt`` counts previous retries (0 for the first delivery). Any
        exception from fetching or analyzing counts as a failure, as does a
        result that still carries processing sentinels. While
        ``attempt < max_retries`` a failure is re-raised for the runtime to
        retry; on the last attempt the fallback payload is written and no
        exception escapes. Returns the status written, or ``None`` when the
        record no longer exists.
        """

        media_id = event.media_id
        budget = self.settings.pipeline.enrich_max_retries if max_retries is None else max(0, max_retries)
        if self.catalog.get(media_id) is None:
            LOGGER.warning("enrich_stage_media_missing", extra={"media_id": media_id})
            return None

        self.ledger.start(media_id, Stage.ENRICH)
        try:
            data = self.fetcher.fetch(event.original_url)
            result = self.enricher.analyze(data)
            tags = strip_sentinel_tags(result.tags)
            if not tags or result.description == PROCESSING_DESCRIPTION:
                raise EnrichmentError("Enrichment returned processing placeholder values")
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if attempt < budget:
                self.ledger.finish(media_id, Stage.ENRICH, JobStatus.RETRYING, error_message=error)
                LOGGER.warning(
                    "enrich_stage_retry",
                    extra={
                        "media_id": media_id,
                        "attempt": attempt,
                        "max_retries": budget,
                        "error_type": type(exc).__name__,
                        "error": error,
                    },
                )
                raise

            fallback = self.settings.enrichment.fallback
            self.catalog.apply_enrichment(
                media_id,
                tags=list(fallback.tags),
                title=fallback.title,
                description=fallback.description,
                alt_text=fallback.alt_text,
                status=MediaStatus.ENRICHED_FALLBACK,
            )
            self.ledger.finish(media_id, Stage.ENRICH, JobStatus.COMPLETED, error_message=error)
            LOGGER.error(
                "enrich_stage_fallback",
                extra={"media_id": media_id, "attempt": attempt, "error_type": type(exc).__name__, "error": error},
            )
            return MediaStatus.ENRICHED_FALLBACK

        self.catalog.apply_enrichment(
            media_id,
            tags=tags,
            title=result.title,
            description=result.description,
            alt_text=result.alt_text,
            status=MediaStatus.ENRICHED,
        )
        self.ledger.finish(media_id, Stage.ENRICH, JobStatus.COMPLETED)
        LOGGER.info("enrich_stage_complete", extra={"media_id": media_id, "attempt": attempt, "tags": tags})
        return MediaStatus.ENRICHED

    def status(self, media_id: str) -> StatusView | None:
        return self.catalog.status(media_id)

    def update_metadata(self, media_id: str, metadata: Mapping[str, Any]) -> MediaItem | None:
        """Partial metadata update; only keys present in ``metadata`` are written."""

        fields: dict[str, Any] = {}
        for key in ("title", "description", "alt_text"):
            if key in metadata:
                fields[key] = metadata[key]
        if "tags" in metadata:
            tags = metadata["tags"]
            if not isinstance(tags, (list, tuple)):
                raise ValueError("Tags must be an array")
            fields["tags"] = strip_sentinel_tags(tags)
        if not fields:
            raise ValueError("No valid fields provided for update")
        _check_settled_description(fields)
        return self.catalog.update_fields(media_id, **fields)

    def edit(
        self,
        media_id: str,
        metadata: Mapping[str, Any],
        image: bytes | None = None,
        filename: str | None = None,
        mimetype: str | None = None,
    ) -> MediaItem | None:
        """Apply a user edit, optionally replacing the image.

        A replacement image is stored and transcoded synchronously under
        ``-edited`` keys and all three URLs are swapped in the same update as
        the metadata; the blobs they replace are then deleted. Returns
        ``None`` for an unknown id.
        """

        current = self.catalog.get(media_id)
        if current is None:
            return None

        fields: dict[str, Any] = {}
        for key in ("title", "description", "alt_text"):
            if key in metadata:
                fields[key] = metadata[key] or None
        if "tags" in metadata:
            fields["tags"] = strip_sentinel_tags(metadata["tags"] or [])
        _check_settled_description(fields)

        if image is not None:
            name = filename or "edited.jpg"
            fmt = image_format_for(name)
            ext = file_extension(name)
            variants = generate_variants(image, fmt)
            content_type = content_type_for(fmt)
            fields["original_url"] = self.store.put(
                image, key_for(media_id, Variant.ORIGINAL, ext, suffix=_EDIT_SUFFIX), mimetype or content_type
            )
            fields["medium_url"] = self.store.put(
                variants.medium, key_for(media_id, Variant.MEDIUM, ext, suffix=_EDIT_SUFFIX), content_type
            )
            fields["thumbnail_url"] = self.store.put(
                variants.thumbnail, key_for(media_id, Variant.THUMBNAIL, ext, suffix=_EDIT_SUFFIX), content_type
            )

        if not fields:
            raise ValueError("No valid fields provided for update")

        updated = self.catalog.update_fields(media_id, **fields)
        if updated is not None and image is not None:
            self._delete_superseded(current, updated)
        LOGGER.info(
            "media_edited",
            extra={"media_id": media_id, "fields": sorted(fields), "image_replaced": image is not None},
        )
        return updated

    def _delete_superseded(self, before: MediaItem, after: MediaItem) -> None:
        pairs = (
            (before.original_url, after.original_url),
            (before.medium_url, after.medium_url),
            (before.thumbnail_url, after.thumbnail_url),
        )
        for old_url, new_url in pairs:
            if old_url and old_url != new_url:
                delete_quietly(self.store, self.store.key_for_url(old_url))

    def delete(self, media_id: str) -> bool:
        """Delete the record and every blob it references.

        Blob deletion failures are logged and do not stop the record delete.
        """

        item = self.catalog.get(media_id)
        if item is None:
            return False

        for url in (item.original_url, item.medium_url, item.thumbnail_url):
            delete_quietly(self.store, self.store.key_for_url(url))

        deleted = self.catalog.delete(media_id)
        LOGGER.info("media_deleted", extra={"media_id": media_id, "deleted": deleted})
        return deleted


__all__ = [
    "RESIZE_ERRORS",
    "Dispatcher",
    "EnrichEvent",
    "IngestError",
    "InlineDispatcher",
    "MediaPipeline",
    "ResizeEvent",
]
