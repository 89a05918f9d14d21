"""Scan folders, ingest every image and optionally wait for processing."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from media_manager.catalog import record_to_payload
from media_manager.config import Settings, load_settings
from media_manager.pipeline import IngestError, MediaPipeline
from media_manager.reconcile import CatalogStatusLookup, HttpStatusLookup, ReconciliationLoop, StatusLookup
from media_manager.scanner import scan_roots
from media_manager.status import MediaSource, is_processing_payload
from media_manager.task_queue import create_pipeline
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ingest"})


def main(
    root: list[Path] = typer.Option(
        ...,
        "--root",
        file_okay=False,
        help="Directory to scan for images; repeat for several.",
    ),
    source: MediaSource = typer.Option(
        MediaSource.LOCAL,
        "--source",
        help="Source recorded on every ingested record.",
    ),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Poll each record until processing finishes or the poll timeout passes.",
    ),
    api_url: Optional[str] = typer.Option(
        None,
        "--api-url",
        help="Poll this API server instead of reading the catalog database directly.",
    ),
) -> None:
    """Ingest every image under the given roots."""

    settings = load_settings()
    pipeline = create_pipeline(settings)

    if api_url:
        with HttpStatusLookup(api_url) as lookup:
            _ingest_roots(pipeline, lookup, settings, root, source, wait)
    else:
        _ingest_roots(pipeline, CatalogStatusLookup(pipeline.catalog), settings, root, source, wait)


def _ingest_roots(
    pipeline: MediaPipeline,
    lookup: StatusLookup,
    settings: Settings,
    root: list[Path],
    source: MediaSource,
    wait: bool,
) -> None:
    loop = ReconciliationLoop(
        lookup,
        interval=settings.polling.interval_seconds,
        timeout=settings.polling.timeout_seconds,
    )

    ingested = 0
    rejected = 0
    for file_info in scan_roots(root):
        try:
            item = pipeline.ingest(
                file_info.path.read_bytes(), file_info.path.name, file_info.mimetype, source=source
            )
        except IngestError as exc:
            rejected += 1
            LOGGER.warning("ingest_file_rejected", extra={"path": str(file_info.path), "error": str(exc)})
            continue

        ingested += 1
        if wait:
            loop.track(item.id, record_to_payload(item))

    LOGGER.info("ingest_complete", extra={"ingested": ingested, "rejected": rejected})

    if not wait:
        return

    loop.wait()
    records = loop.records
    pending = [media_id for media_id, record in records.items() if is_processing_payload(record)]
    for media_id, record in records.items():
        typer.echo(f"{media_id}\t{record.get('status')}\t{record.get('title')}")
    LOGGER.info("ingest_wait_complete", extra={"settled": len(records) - len(pending), "pending": len(pending)})


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
