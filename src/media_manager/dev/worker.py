"""Start a Celery worker consuming the resize and enrich queues."""

from __future__ import annotations

from typing import Optional

import typer

from media_manager.task_queue import _load_settings, celery_app
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "worker"})


def build_worker_argv(
    queues: list[str],
    concurrency: int,
    loglevel: str = "INFO",
    hostname: Optional[str] = None,
) -> list[str]:
    argv = ["worker", f"--loglevel={loglevel}", f"--queues={','.join(queues)}", f"--concurrency={concurrency}"]
    if hostname:
        argv.append(f"--hostname={hostname}")
    return argv


def main(
    queue: list[str] = typer.Option(
        [],
        "--queue",
        "-Q",
        help="Queue to consume; repeat for several. Defaults to both pipeline queues.",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        min=1,
        help="Worker processes; defaults to queues.default_concurrency.",
    ),
    loglevel: str = typer.Option("INFO", "--loglevel", help="Celery log level."),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Celery node name."),
) -> None:
    """Run a Celery worker for the media processing pipeline."""

    settings = _load_settings()
    queues = queue or [settings.queues.resize_queue, settings.queues.enrich_queue]
    workers = concurrency or settings.queues.default_concurrency

    LOGGER.info("worker_start", extra={"queues": queues, "concurrency": workers})
    celery_app.worker_main(argv=build_worker_argv(queues, workers, loglevel, hostname))


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["build_worker_argv", "cli", "main"]
