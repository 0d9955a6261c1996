"""Queue worker: claims jobs and dispatches them to registered handlers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

from ragforge.core.config import Settings
from ragforge.core.errors import JobRetryExhausted, RagForgeError
from ragforge.core.logging import get_logger, log_context
from ragforge.jobs.deadline import Deadline
from ragforge.jobs.queue import JobQueue
from ragforge.models.entities import JOB_FAILED, Job

logger = get_logger(__name__)

MAX_CONSECUTIVE_ERRORS = 5

JobHandler = Callable[[Job, Deadline], Any]
FailureCallback = Callable[[Job, str], None]


@dataclass(slots=True)
class _Registration:
    handler: JobHandler
    on_terminal_failure: FailureCallback | None = None


class Worker:
    """Process jobs one at a time from a :class:`JobQueue`.

    Handlers must be idempotent: a crash after partial work followed by a
    retry re-runs the whole handler. Errors raised by a handler decide the
    retry policy through their ``retryable`` attribute; anything that is not a
    :class:`RagForgeError` is treated as transient.
    """

    def __init__(self, queue: JobQueue, settings: Settings, name: str = "worker-0") -> None:
        self.queue = queue
        self.settings = settings
        self.name = name
        self.consecutive_errors = 0
        self._handlers: dict[str, _Registration] = {}
        self._stop = threading.Event()

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        on_terminal_failure: FailureCallback | None = None,
    ) -> None:
        self._handlers[job_type] = _Registration(handler, on_terminal_failure)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def run_once(self, timeout: float = 0.0) -> bool:
        """Claim and process at most one job. Returns ``True`` if a job ran."""
        job = self.queue.wait_for_job(timeout) if timeout > 0 else self.queue.claim()
        if job is None:
            return False
        self.process(job)
        return True

    def process(self, job: Job) -> None:
        ctx = log_context(job_id=job.id, job_type=job.job_type, worker=self.name)
        registration = self._handlers.get(job.job_type)
        if registration is None:
            self._record_failure(job, None, f"No handler registered for job type '{job.job_type}'", False)
            return

        deadline = Deadline(self.settings.job_timeout_seconds)
        try:
            result = registration.handler(job, deadline)
        except RagForgeError as exc:
            self._record_failure(job, registration, str(exc) or type(exc).__name__, exc.retryable)
        except Exception as exc:
            logger.exception("Unexpected error while processing job", extra=ctx)
            self._record_failure(job, registration, f"Unexpected error: {exc}", True)
        else:
            self.queue.complete(job.id, result)

    def _record_failure(
        self,
        job: Job,
        registration: _Registration | None,
        message: str,
        retryable: bool,
    ) -> None:
        updated = self.queue.fail(job.id, message, should_retry=retryable)
        if updated.status != JOB_FAILED:
            return
        if retryable:
            exhausted = JobRetryExhausted(updated.id, updated.attempts, message)
            logger.error(str(exhausted), extra=log_context(job_id=job.id, worker=self.name))
        if registration is not None and registration.on_terminal_failure is not None:
            registration.on_terminal_failure(updated, message)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Main loop: long-poll for jobs until stopped."""
        if stop_event is not None:
            self._stop = stop_event
        logger.info("Starting worker", extra=log_context(worker=self.name, handlers=self.job_types))
        poll = self.settings.worker_poll_interval
        while not self._stop.is_set():
            try:
                job = self.queue.wait_for_job(poll)
                if job is None:
                    continue
                self.process(job)
                self.consecutive_errors = 0
            except Exception as exc:
                logger.exception("Error in worker loop: %s", exc, extra=log_context(worker=self.name))
                self.consecutive_errors += 1
                if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.error("Too many consecutive errors, stopping worker", extra=log_context(worker=self.name))
                    break
                self._stop.wait(poll * 2)
        logger.info("Worker stopped", extra=log_context(worker=self.name))

    def stop(self) -> None:
        self._stop.set()
        self.queue.notifier.notify()


__all__ = ["JobHandler", "Worker", "MAX_CONSECUTIVE_ERRORS"]
