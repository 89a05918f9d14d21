"""List pipeline job ledger entries, e.g. failed resize jobs."""

from __future__ import annotations

from typing import Optional

import typer

from media_manager.config import load_settings
from media_manager.jobs import JobLedger, JobStatus, Stage


def main(
    status: Optional[JobStatus] = typer.Option(None, "--status", help="Only jobs in this state."),
    stage: Optional[Stage] = typer.Option(None, "--stage", help="Only jobs for this stage."),
    limit: int = typer.Option(100, "--limit", min=1, help="Maximum rows to print."),
) -> None:
    """Print one tab-separated line per job, most recently updated first."""

    settings = load_settings()
    ledger = JobLedger(settings.databases.primary_url)
    for job in ledger.list_jobs(status=status, stage=stage, limit=limit):
        typer.echo(f"{job.media_id}\t{job.stage}\t{job.status}\t{job.attempts}\t{job.error_message or ''}")


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
