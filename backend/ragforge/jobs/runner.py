"""Wire workers to the ingest pipeline and run them on threads."""

from __future__ import annotations

import signal
import threading

from ragforge.core.config import Settings
from ragforge.core.logging import get_logger
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.ingest.embeddings import get_embedding_provider
from ragforge.ingest.pipeline import IngestPipeline
from ragforge.jobs.queue import FILE_PROCESSING, JobQueue
from ragforge.jobs.worker import Worker

logger = get_logger(__name__)


def build_worker(settings: Settings, database: SQLiteDatabase, name: str = "worker-0") -> Worker:
    """A worker with every built-in job type registered, on its own connection."""
    queue = JobQueue(database, settings)
    pipeline = IngestPipeline(database, settings)
    worker = Worker(queue, settings, name=name)
    worker.register(FILE_PROCESSING, pipeline.handle_job, on_terminal_failure=pipeline.on_job_failed)
    return worker


def check_providers(settings: Settings) -> bool:
    provider = get_embedding_provider(settings)
    healthy = provider.health_check()
    if not healthy:
        logger.error("Embedding provider %s is not reachable; jobs will retry", provider.name)
    return healthy


def run_workers(
    settings: Settings,
    concurrency: int | None = None,
    stop_event: threading.Event | None = None,
    install_signals: bool = True,
) -> None:
    """Run ``concurrency`` workers until ``stop_event`` is set or a signal arrives.

    Each worker thread opens its own SQLite connection; the claim transaction
    keeps them from ever sharing a job.
    """
    count = concurrency or settings.worker_concurrency
    stop = stop_event or threading.Event()
    bootstrap = SQLiteDatabase(settings.db_path)
    bootstrap.ensure_schema()
    check_providers(settings)
    stale = JobQueue(bootstrap, settings).requeue_stale(settings.job_timeout_seconds * 2)
    if stale:
        logger.warning("Recovered %d stale jobs at startup", stale)
    bootstrap.close()

    workers: list[Worker] = []
    threads: list[threading.Thread] = []

    if install_signals:
        def handle_signal(signum, frame):
            logger.info("Received signal %s, shutting down...", signum)
            stop.set()
            for worker in workers:
                worker.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    for idx in range(count):
        database = SQLiteDatabase(settings.db_path)
        worker = build_worker(settings, database, name=f"worker-{idx}")
        workers.append(worker)
        thread = threading.Thread(target=worker.run, args=(stop,), name=worker.name, daemon=True)
        threads.append(thread)
        thread.start()

    try:
        while any(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(timeout=0.5)
    finally:
        stop.set()
        for worker in workers:
            worker.stop()
            worker.queue.db.close()


__all__ = ["build_worker", "check_providers", "run_workers"]
