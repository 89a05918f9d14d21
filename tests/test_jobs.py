"""Tests for the pipeline job ledger."""

from __future__ import annotations

from media_manager.jobs import JobStatus, Stage, job_key


def test_job_key_combines_media_and_stage() -> None:
    assert job_key("m1", Stage.RESIZE) == "m1:resize"
    assert job_key("m1", Stage.ENRICH) == "m1:enrich"


def test_start_counts_attempts_per_stage(ledger) -> None:
    assert ledger.start("m1", Stage.ENRICH) == 1
    assert ledger.start("m1", Stage.ENRICH) == 2
    assert ledger.start("m1", Stage.RESIZE) == 1
    assert ledger.start("m2", Stage.ENRICH) == 1


def test_finish_records_status_and_error(ledger) -> None:
    ledger.start("m1", Stage.RESIZE)
    ledger.finish("m1", Stage.RESIZE, JobStatus.FAILED, error_message="download failed")

    job = ledger.get("m1", Stage.RESIZE)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == "download failed"
    assert not ledger.is_completed("m1", Stage.RESIZE)

    ledger.start("m1", Stage.RESIZE)
    ledger.finish("m1", Stage.RESIZE, JobStatus.COMPLETED)
    assert ledger.is_completed("m1", Stage.RESIZE)
    assert ledger.get("m1", Stage.RESIZE).error_message is None


def test_finish_without_start_is_ignored(ledger) -> None:
    ledger.finish("m1", Stage.ENRICH, JobStatus.COMPLETED)

    assert ledger.get("m1", Stage.ENRICH) is None


def test_list_jobs_filters(ledger) -> None:
    ledger.start("m1", Stage.RESIZE)
    ledger.finish("m1", Stage.RESIZE, JobStatus.FAILED, error_message="boom")
    ledger.start("m2", Stage.RESIZE)
    ledger.finish("m2", Stage.RESIZE, JobStatus.COMPLETED)
    ledger.start("m2", Stage.ENRICH)

    failed = ledger.list_jobs(status=JobStatus.FAILED)
    enrich = ledger.list_jobs(stage=Stage.ENRICH)

    assert [(job.media_id, job.stage) for job in failed] == [("m1", "resize")]
    assert [(job.media_id, job.status) for job in enrich] == [("m2", "running")]
    assert len(ledger.list_jobs(limit=2)) == 2
