from __future__ import annotations

from ragforge.core.errors import ParseError
from ragforge.ingest.pipeline import DocumentRepository, IngestPipeline
from ragforge.jobs.queue import FILE_PROCESSING, JobQueue
from ragforge.jobs.runner import build_worker
from ragforge.jobs.worker import Worker
from ragforge.models.entities import (
    DOC_FAILED,
    DOC_PROCESSED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
)


def _queue(db, settings) -> JobQueue:
    return JobQueue(db, settings, jitter=0.0)


def test_run_once_without_jobs_returns_false(db, settings) -> None:
    worker = build_worker(settings, db)
    assert worker.run_once() is False
    assert worker.job_types == [FILE_PROCESSING]


def test_worker_processes_uploaded_document(db, settings, knowledge_base, sample_text) -> None:
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    (settings.storage_root / "france.txt").write_text(sample_text)
    queue = _queue(db, settings)
    document, job_id = IngestPipeline(db, settings).submit(queue, knowledge_base.id, "france.txt", "france.txt")

    worker = build_worker(settings, db)
    assert worker.run_once() is True

    job = queue.get(job_id)
    assert job.status == JOB_COMPLETED
    assert job.result["status"] == DOC_PROCESSED
    assert job.result["chunk_count"] == 1
    assert DocumentRepository(db).get(document.id).status == DOC_PROCESSED


def test_missing_file_fails_job_and_document_without_retry(db, settings, knowledge_base) -> None:
    queue = _queue(db, settings)
    document, job_id = IngestPipeline(db, settings).submit(queue, knowledge_base.id, "nowhere.txt", "nowhere.txt")

    build_worker(settings, db).run_once()

    job = queue.get(job_id)
    assert job.status == JOB_FAILED
    assert job.attempts == 1
    stored = DocumentRepository(db).get(document.id)
    assert stored.status == DOC_FAILED
    assert stored.error_message == job.error


def test_unknown_job_type_fails_immediately(db, settings) -> None:
    queue = _queue(db, settings)
    job_id = queue.enqueue("thumbnail", {"path": "a.png"})
    worker = Worker(queue, settings)

    worker.run_once()

    job = queue.get(job_id)
    assert job.status == JOB_FAILED
    assert "No handler registered" in job.error


def test_transient_errors_retry_until_exhausted(db, settings) -> None:
    queue = _queue(db, settings)
    job_id = queue.enqueue("flaky", {}, max_attempts=2)
    failures: list[tuple[str, str]] = []
    calls = []

    def handler(job, deadline):
        calls.append(job.attempts)
        raise RuntimeError("connection reset")

    worker = Worker(queue, settings)
    worker.register("flaky", handler, on_terminal_failure=lambda job, message: failures.append((job.id, message)))

    worker.run_once()
    assert queue.get(job_id).status == JOB_PENDING
    assert failures == []

    worker.run_once()
    job = queue.get(job_id)
    assert calls == [1, 2]
    assert job.status == JOB_FAILED
    assert failures == [(job_id, "Unexpected error: connection reset")]
    assert worker.run_once() is False


def test_non_retryable_error_skips_remaining_attempts(db, settings) -> None:
    queue = _queue(db, settings)
    job_id = queue.enqueue("fetch", {}, max_attempts=5)
    failures = []

    def handler(job, deadline):
        raise ParseError("not a spreadsheet")

    worker = Worker(queue, settings)
    worker.register("fetch", handler, on_terminal_failure=lambda job, message: failures.append(message))
    worker.run_once()

    job = queue.get(job_id)
    assert job.status == JOB_FAILED
    assert job.attempts == 1
    assert failures == ["not a spreadsheet"]


def test_handler_result_is_stored(db, settings) -> None:
    queue = _queue(db, settings)
    job_id = queue.enqueue("echo", {"value": 7})
    worker = Worker(queue, settings)
    worker.register("echo", lambda job, deadline: {"echo": job.payload["value"], "budget": deadline.budget_seconds})

    worker.run_once()

    job = queue.get(job_id)
    assert job.status == JOB_COMPLETED
    assert job.result == {"echo": 7, "budget": settings.job_timeout_seconds}
