"""Per-stage execution ledger for the processing pipeline."""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path

from sqlalchemy import select

from media_manager.db import PipelineJob, open_primary_session
from media_manager.db_helpers import upsert_insert


class Stage(str, Enum):
    RESIZE = "resize"
    ENRICH = "enrich"


class JobStatus(str, Enum):
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


def job_key(media_id: str, stage: Stage) -> str:
    """Idempotency key shared by the ledger and the Celery task id."""

    return f"{media_id}:{Stage(stage).value}"


class JobLedger:
    """Record attempts and outcomes keyed by ``(media_id, stage)``."""

    def __init__(self, target: str | Path) -> None:
        self._target = target

    def start(self, media_id: str, stage: Stage) -> int:
        """Mark an attempt as running and return the attempt number (1-based)."""

        now = time.time()
        with open_primary_session(self._target) as session:
            stmt = upsert_insert(session, PipelineJob).values(
                media_id=media_id,
                stage=Stage(stage).value,
                status=JobStatus.RUNNING.value,
                attempts=1,
                error_message=None,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[PipelineJob.media_id, PipelineJob.stage],
                set_={
                    "status": JobStatus.RUNNING.value,
                    "attempts": PipelineJob.attempts + 1,
                    "updated_at": now,
                },
            )
            session.execute(stmt)
            session.commit()
            row = session.get(PipelineJob, (media_id, Stage(stage).value), populate_existing=True)
            return int(row.attempts) if row is not None else 1

    def finish(self, media_id: str, stage: Stage, status: JobStatus, error_message: str | None = None) -> None:
        with open_primary_session(self._target) as session:
            row = session.get(PipelineJob, (media_id, Stage(stage).value))
            if row is None:
                return
            row.status = JobStatus(status).value
            row.error_message = error_message
            row.updated_at = time.time()
            session.add(row)
            session.commit()

    def get(self, media_id: str, stage: Stage) -> PipelineJob | None:
        with open_primary_session(self._target) as session:
            return session.get(PipelineJob, (media_id, Stage(stage).value))

    def is_completed(self, media_id: str, stage: Stage) -> bool:
        row = self.get(media_id, stage)
        return row is not None and row.status == JobStatus.COMPLETED.value

    def list_jobs(self, status: JobStatus | None = None, stage: Stage | None = None, limit: int = 100) -> list[PipelineJob]:
        stmt = select(PipelineJob)
        if status is not None:
            stmt = stmt.where(PipelineJob.status == JobStatus(status).value)
        if stage is not None:
            stmt = stmt.where(PipelineJob.stage == Stage(stage).value)
        stmt = stmt.order_by(PipelineJob.updated_at.desc()).limit(max(1, limit))
        with open_primary_session(self._target) as session:
            return list(session.execute(stmt).scalars().all())


__all__ = ["JobLedger", "JobStatus", "Stage", "job_key"]
