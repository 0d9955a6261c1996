"""Tests for the ingest pipeline."""

from __future__ import annotations

import pytest

from ragforge.core.errors import EmbeddingProviderError, JobTimeoutError, ParseError, UnsupportedFormat
from ragforge.ingest.embeddings import EmbeddingProvider, HashedEmbeddingProvider
from ragforge.ingest.pipeline import IngestPipeline
from ragforge.jobs.deadline import Deadline
from ragforge.jobs.queue import FILE_PROCESSING, JobQueue
from ragforge.models.entities import DOC_FAILED, DOC_PROCESSED, DOC_PROCESSING, DOC_UPLOADED


class FailingProvider(EmbeddingProvider):
    """Fails on the listed calls (all calls when ``fail_on`` is None)."""

    name = "failing"

    def __init__(self, fail_on: set[int] | None = None, dim: int = 384) -> None:
        super().__init__("failing", dim)
        self.fail_on = fail_on
        self.calls = 0
        self._inner = HashedEmbeddingProvider("hashed", dim)

    def embed(self, text: str) -> list[float]:
        index = self.calls
        self.calls += 1
        if self.fail_on is None or index in self.fail_on:
            raise EmbeddingProviderError(f"Ollama API returned 503: overloaded (call {index})")
        return self._inner.embed(text)


@pytest.fixture
def scenario_settings(settings):
    settings.chunk_overlap = 10
    settings.chunk_size = 50
    return settings


@pytest.fixture
def upload(scenario_settings, sample_text):
    def _write(name: str, content: str | bytes = sample_text) -> str:
        path = scenario_settings.storage_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
        return name

    return _write


def _submit(pipeline: IngestPipeline, db, settings, kb_id: str, name: str, file_type: str | None = "txt"):
    queue = JobQueue(db, settings)
    document, job_id = pipeline.submit(queue, kb_id, name, name, file_type)
    return document, job_id, queue


def test_submit_registers_document_and_job(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, job_id, queue = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("a.txt"))
    assert document.status == DOC_UPLOADED
    job = queue.get(job_id)
    assert job.job_type == FILE_PROCESSING
    assert job.priority == 10
    assert job.payload == {
        "document_id": document.id,
        "knowledge_base_id": knowledge_base.id,
        "source_uri": "a.txt",
        "file_name": "a.txt",
        "file_type": "txt",
    }


def test_document_is_processed_into_overlapping_chunks(db, scenario_settings, knowledge_base, upload, sample_text) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))

    outcome = pipeline.process_document(document.id)

    assert outcome.status == DOC_PROCESSED
    assert outcome.chunk_count == 2
    assert outcome.character_count == len(sample_text)
    stored = pipeline.documents.get(document.id)
    assert stored.status == DOC_PROCESSED
    assert stored.chunk_count == 2
    assert stored.processed_at is not None
    rows = db.query(
        "SELECT chunk_text, chunk_index, start_char, end_char, metadata FROM chunks "
        "WHERE document_id = ? ORDER BY chunk_index",
        [document.id],
    )
    assert [(r["start_char"], r["end_char"]) for r in rows] == [(0, 50), (40, len(sample_text))]
    assert rows[0]["chunk_text"][-10:] == rows[1]["chunk_text"][:10]
    assert '"file_name":"france.txt"' in rows[1]["metadata"]
    assert '"chunk_index":1' in rows[1]["metadata"]


def test_all_embeddings_failing_marks_document_failed(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings, embedding_provider=FailingProvider())
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))

    with pytest.raises(EmbeddingProviderError) as excinfo:
        pipeline.process_document(document.id)

    assert excinfo.value.retryable is False
    stored = pipeline.documents.get(document.id)
    assert stored.status == DOC_FAILED
    assert stored.error_message == "Ollama API returned 503: overloaded (call 0)"
    assert pipeline.vector_store.count(document_id=document.id) == 0


def test_partial_embedding_failure_keeps_surviving_chunks(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings, embedding_provider=FailingProvider(fail_on={1}))
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))

    outcome = pipeline.process_document(document.id)

    assert outcome.status == DOC_PROCESSED
    assert outcome.chunk_count == 1
    assert outcome.failed_chunks == [1]
    assert outcome.first_error.startswith("Ollama API returned 503")
    assert pipeline.documents.get(document.id).chunk_count == 1


def test_unsupported_format_propagates(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, _, _ = _submit(
        pipeline, db, scenario_settings, knowledge_base.id, upload("photo.png", b"\x89PNG"), file_type="image/png"
    )
    with pytest.raises(UnsupportedFormat):
        pipeline.process_document(document.id)
    assert pipeline.documents.get(document.id).status == DOC_PROCESSING


def test_empty_file_is_a_parse_error(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("empty.txt", ""))
    with pytest.raises(ParseError):
        pipeline.process_document(document.id)


def test_expired_deadline_stops_before_work(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))
    with pytest.raises(JobTimeoutError):
        pipeline.process_document(document.id, Deadline(0.0))
    assert pipeline.vector_store.count(document_id=document.id) == 0


def test_processing_is_idempotent(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, _, _ = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))
    pipeline.process_document(document.id)
    again = pipeline.process_document(document.id)
    assert again.status == DOC_PROCESSED
    assert pipeline.vector_store.count(document_id=document.id) == 2


def test_reprocess_resets_document_and_rows(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, first_job, queue = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))
    pipeline.process_document(document.id)

    reset, job_id = pipeline.reprocess(queue, document.id)

    assert job_id != first_job
    assert reset.status == DOC_UPLOADED
    assert reset.chunk_count == 0
    assert pipeline.vector_store.count(document_id=document.id) == 0
    assert pipeline.process_document(document.id).chunk_count == 2


def test_terminal_job_failure_marks_document_failed(db, scenario_settings, knowledge_base, upload) -> None:
    pipeline = IngestPipeline(db, scenario_settings)
    document, job_id, queue = _submit(pipeline, db, scenario_settings, knowledge_base.id, upload("france.txt"))
    pipeline.on_job_failed(queue.get(job_id), "gave up after 3 attempts")
    stored = pipeline.documents.get(document.id)
    assert stored.status == DOC_FAILED
    assert stored.error_message == "gave up after 3 attempts"
