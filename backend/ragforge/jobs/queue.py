"""Durable, priority-ordered job queue backed by SQLite."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Mapping, Sequence

import orjson

from ragforge.core.config import Settings
from ragforge.core.errors import NotFoundError, PayloadValidationError
from ragforge.core.logging import get_logger, log_context
from ragforge.core.metrics import JOB_EVENTS
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.jobs.backoff import compute_backoff
from ragforge.models.entities import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_STATUSES,
    Job,
)
from ragforge.utils.ids import JOB_PREFIX, new_id
from ragforge.utils.time import now_ts

logger = get_logger(__name__)

FILE_PROCESSING = "file_processing"

DEFAULT_PRIORITIES: dict[str, int] = {FILE_PROCESSING: 10}

PayloadValidator = Callable[[Mapping[str, Any]], None]


def _require_document_id(payload: Mapping[str, Any]) -> None:
    document_id = payload.get("document_id")
    if not isinstance(document_id, str) or not document_id:
        raise PayloadValidationError("file_processing payload requires a document_id")


PAYLOAD_VALIDATORS: dict[str, PayloadValidator] = {FILE_PROCESSING: _require_document_id}


def register_payload_validator(job_type: str, validator: PayloadValidator) -> None:
    PAYLOAD_VALIDATORS[job_type] = validator


class JobNotifier:
    """In-process wake-up signal for workers blocked in :meth:`JobQueue.wait_for_job`.

    A version counter rather than a bare event: a waiter remembers the version
    it saw before its last claim attempt, so a signal raised between that
    attempt and the wait is never lost.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._version = 0

    @property
    def version(self) -> int:
        with self._cond:
            return self._version

    def notify(self) -> None:
        with self._cond:
            self._version += 1
            self._cond.notify_all()

    def wait(self, seen: int, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._version != seen, timeout=timeout)


DEFAULT_NOTIFIER = JobNotifier()


class JobQueue:
    """Enqueue, claim and transition jobs.

    Every transition is a conditional ``UPDATE`` on the current status, so a
    terminal job is never moved back to ``pending`` and two workers can never
    both move the same row to ``processing``.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        settings: Settings,
        notifier: JobNotifier | None = None,
        clock: Callable[[], float] = now_ts,
        jitter: float = 0.1,
    ) -> None:
        self.db = database
        self.settings = settings
        self.notifier = notifier or DEFAULT_NOTIFIER
        self._clock = clock
        self._jitter = jitter

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> str:
        if not isinstance(job_type, str) or not job_type.strip():
            raise PayloadValidationError("job_type must be a non-empty string")
        if not isinstance(payload, Mapping):
            raise PayloadValidationError("payload must be a JSON object")
        validator = PAYLOAD_VALIDATORS.get(job_type)
        if validator is not None:
            validator(payload)
        try:
            encoded = orjson.dumps(dict(payload))
        except TypeError as exc:
            raise PayloadValidationError(f"payload is not JSON serialisable: {exc}") from exc
        attempts_cap = max_attempts if max_attempts is not None else self.settings.job_max_attempts
        if attempts_cap < 1:
            raise PayloadValidationError("max_attempts must be at least 1")
        if priority is None:
            priority = DEFAULT_PRIORITIES.get(job_type, 0)

        job_id = new_id(JOB_PREFIX)
        self.db.execute(
            """
            INSERT INTO jobs (id, job_type, status, priority, payload, attempts, max_attempts, created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (job_id, job_type, JOB_PENDING, int(priority), encoded.decode("utf-8"), attempts_cap, self._clock()),
        )
        JOB_EVENTS.labels(job_type=job_type, event="enqueued").inc()
        logger.info("Enqueued %s job", job_type, extra=log_context(job_id=job_id, priority=priority))
        self.notifier.notify()
        return job_id

    def claim(self, job_types: Sequence[str] | None = None) -> Job | None:
        """Atomically move the best eligible pending job to ``processing``."""
        now = self._clock()
        sql = (
            "SELECT id FROM jobs WHERE status = ? AND attempts < max_attempts "
            "AND (next_retry_at IS NULL OR next_retry_at <= ?)"
        )
        params: list[Any] = [JOB_PENDING, now]
        if job_types:
            placeholders = ", ".join("?" for _ in job_types)
            sql += f" AND job_type IN ({placeholders})"
            params.extend(job_types)
        sql += " ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT 1"

        with self.db.transaction(immediate=True) as cur:
            row = cur.execute(sql, params).fetchone()
            if row is None:
                return None
            job_id = row["id"]
            updated = cur.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = attempts + 1, started_at = ?, next_retry_at = NULL
                WHERE id = ? AND status = ? AND attempts < max_attempts
                """,
                (JOB_PROCESSING, now, job_id, JOB_PENDING),
            )
            if updated.rowcount != 1:
                return None
            job = Job.from_row(cur.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone())

        JOB_EVENTS.labels(job_type=job.job_type, event="claimed").inc()
        logger.info(
            "Claimed %s job",
            job.job_type,
            extra=log_context(job_id=job.id, attempt=job.attempts, max_attempts=job.max_attempts),
        )
        return job

    def wait_for_job(self, timeout: float, job_types: Sequence[str] | None = None) -> Job | None:
        """Block until a job can be claimed or ``timeout`` seconds pass.

        Wakes immediately on enqueue/fail signals from this process and
        re-polls every ``worker_poll_interval`` seconds for work enqueued by
        other processes or for retries whose delay has elapsed.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            seen = self.notifier.version
            job = self.claim(job_types)
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self.notifier.wait(seen, min(remaining, self.settings.worker_poll_interval))

    def complete(self, job_id: str, result: Any = None) -> Job:
        encoded = orjson.dumps(result).decode("utf-8") if result is not None else None
        with self.db.transaction(immediate=True) as cur:
            updated = cur.execute(
                """
                UPDATE jobs SET status = ?, result = ?, error = NULL, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (JOB_COMPLETED, encoded, self._clock(), job_id, JOB_PROCESSING),
            ).rowcount
            job = self._fetch(cur, job_id)
        if updated != 1:
            logger.warning(
                "Ignoring completion of job in status %s", job.status, extra=log_context(job_id=job_id)
            )
            return job
        JOB_EVENTS.labels(job_type=job.job_type, event="completed").inc()
        logger.info("Completed %s job", job.job_type, extra=log_context(job_id=job_id))
        return job

    def fail(self, job_id: str, error: str, should_retry: bool = True) -> Job:
        """Record a failed attempt; reschedule with backoff or fail terminally."""
        now = self._clock()
        with self.db.transaction(immediate=True) as cur:
            job = self._fetch(cur, job_id)
            if job.status != JOB_PROCESSING:
                logger.warning(
                    "Ignoring failure of job in status %s", job.status, extra=log_context(job_id=job_id)
                )
                return job
            if should_retry and job.attempts < job.max_attempts:
                delay = compute_backoff(
                    job.attempts,
                    self.settings.job_backoff_base,
                    self.settings.job_backoff_max,
                    jitter=self._jitter,
                )
                cur.execute(
                    """
                    UPDATE jobs SET status = ?, error = ?, next_retry_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (JOB_PENDING, error, now + delay, job_id, JOB_PROCESSING),
                )
                event = "retried"
            else:
                cur.execute(
                    """
                    UPDATE jobs SET status = ?, error = ?, failed_at = ?, next_retry_at = NULL
                    WHERE id = ? AND status = ?
                    """,
                    (JOB_FAILED, error, now, job_id, JOB_PROCESSING),
                )
                event = "failed"
            job = self._fetch(cur, job_id)

        JOB_EVENTS.labels(job_type=job.job_type, event=event).inc()
        if event == "retried":
            logger.warning(
                "Job attempt failed, retrying: %s",
                error,
                extra=log_context(job_id=job_id, attempt=job.attempts, next_retry_at=job.next_retry_at),
            )
            self.notifier.notify()
        else:
            logger.error(
                "Job failed terminally: %s", error, extra=log_context(job_id=job_id, attempt=job.attempts)
            )
        return job

    def cancel(self, job_id: str) -> Job:
        with self.db.transaction(immediate=True) as cur:
            updated = cur.execute(
                """
                UPDATE jobs SET status = ?, completed_at = ?, next_retry_at = NULL
                WHERE id = ? AND status IN (?, ?)
                """,
                (JOB_CANCELLED, self._clock(), job_id, JOB_PENDING, JOB_PROCESSING),
            ).rowcount
            job = self._fetch(cur, job_id)
        if updated == 1:
            JOB_EVENTS.labels(job_type=job.job_type, event="cancelled").inc()
            logger.info("Cancelled job", extra=log_context(job_id=job_id))
        return job

    def get(self, job_id: str) -> Job | None:
        row = self.db.query_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return Job.from_row(row) if row else None

    def stats(self) -> dict[str, int]:
        rows = self.db.query("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status")
        counts = {status: 0 for status in JOB_STATUSES}
        for row in rows:
            counts[row["status"]] = row["total"]
        counts["total"] = sum(counts[status] for status in JOB_STATUSES)
        return counts

    def cleanup(self, retention_days: float | None = None) -> int:
        """Delete terminal jobs that left the queue more than ``retention_days`` ago."""
        days = self.settings.job_retention_days if retention_days is None else retention_days
        cutoff = self._clock() - days * 86400
        cursor = self.db.execute(
            """
            DELETE FROM jobs
            WHERE status IN (?, ?, ?)
              AND COALESCE(completed_at, failed_at, created_at) < ?
            """,
            (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED, cutoff),
        )
        deleted = cursor.rowcount
        if deleted:
            logger.info("Deleted %d expired jobs", deleted)
        return deleted

    def requeue_stale(self, older_than: float) -> int:
        """Release ``processing`` jobs whose worker vanished ``older_than`` seconds ago.

        Jobs with attempts left go back to ``pending``; the rest fail terminally.
        """
        now = self._clock()
        cutoff = now - older_than
        with self.db.transaction(immediate=True) as cur:
            requeued = cur.execute(
                """
                UPDATE jobs SET status = ?, error = 'worker lost', next_retry_at = NULL
                WHERE status = ? AND started_at < ? AND attempts < max_attempts
                """,
                (JOB_PENDING, JOB_PROCESSING, cutoff),
            ).rowcount
            exhausted = cur.execute(
                """
                UPDATE jobs SET status = ?, error = 'worker lost', failed_at = ?
                WHERE status = ? AND started_at < ?
                """,
                (JOB_FAILED, now, JOB_PROCESSING, cutoff),
            ).rowcount
        if requeued or exhausted:
            logger.warning("Recovered stale jobs: %d requeued, %d failed", requeued, exhausted)
            self.notifier.notify()
        return requeued + exhausted

    @staticmethod
    def _fetch(cur, job_id: str) -> Job:
        row = cur.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return Job.from_row(row)


__all__ = [
    "FILE_PROCESSING",
    "JobNotifier",
    "JobQueue",
    "register_payload_validator",
]
