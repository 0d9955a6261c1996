"""Ingest pipeline orchestration."""

from __future__ import annotations

import time
from typing import Any

from ragforge.core.config import Settings
from ragforge.core.errors import EmbeddingProviderError, NotFoundError, PayloadValidationError
from ragforge.core.logging import get_logger, log_context
from ragforge.core.metrics import INGEST_DURATION
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.ingest.chunker import chunk_text
from ragforge.ingest.embeddings import EmbeddingGenerator, EmbeddingProvider, get_embedding_provider
from ragforge.ingest.extraction import ExtractorRegistry, extract
from ragforge.ingest.storage import ObjectStorage
from ragforge.ingest.types import IngestOutcome
from ragforge.jobs.deadline import Deadline
from ragforge.jobs.queue import FILE_PROCESSING, JobQueue
from ragforge.models.entities import (
    DOC_FAILED,
    DOC_PROCESSED,
    DOC_PROCESSING,
    DOC_UPLOADED,
    Document,
    Job,
    KnowledgeBase,
)
from ragforge.retrieval.vector_store import VectorStore
from ragforge.utils.ids import DOCUMENT_PREFIX, KNOWLEDGE_BASE_PREFIX, new_id
from ragforge.utils.text import truncate
from ragforge.utils.time import now_ts

logger = get_logger(__name__)


class KnowledgeBaseRepository:
    """Knowledge bases pin the embedding provider, model and dimension at creation."""

    def __init__(self, db: SQLiteDatabase, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    def create(
        self,
        name: str,
        embedding_provider: str | None = None,
        embedding_model: str | None = None,
        embedding_dim: int | None = None,
    ) -> KnowledgeBase:
        kb = KnowledgeBase(
            id=new_id(KNOWLEDGE_BASE_PREFIX),
            name=name,
            embedding_provider=embedding_provider or self.settings.embedding_provider,
            embedding_model=embedding_model or self.settings.embedding_model,
            embedding_dim=embedding_dim or self.settings.embedding_dim,
            created_at=now_ts(),
        )
        self.db.execute(
            """
            INSERT INTO knowledge_bases (id, name, embedding_provider, embedding_model, embedding_dim, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (kb.id, kb.name, kb.embedding_provider, kb.embedding_model, kb.embedding_dim, kb.created_at),
        )
        return kb

    def get(self, knowledge_base_id: str) -> KnowledgeBase:
        row = self.db.query_one("SELECT * FROM knowledge_bases WHERE id = ?", (knowledge_base_id,))
        if row is None:
            raise NotFoundError(f"Knowledge base {knowledge_base_id} not found")
        return KnowledgeBase.from_row(row)


class DocumentRepository:
    """Document rows and their status machine.

    ``uploaded -> processing -> processed | failed``; the only way back is
    :meth:`reset_for_reprocess`. Updates are guarded on the current status so
    a late or repeated call cannot move a document backwards.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def create(
        self,
        knowledge_base_id: str,
        source_uri: str,
        file_name: str,
        file_type: str | None = None,
    ) -> Document:
        now = now_ts()
        document_id = new_id(DOCUMENT_PREFIX)
        self.db.execute(
            """
            INSERT INTO documents (
                id, knowledge_base_id, source_uri, file_name, file_type, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (document_id, knowledge_base_id, source_uri, file_name, file_type, DOC_UPLOADED, now, now),
        )
        return self.get(document_id)

    def get(self, document_id: str) -> Document:
        row = self.db.query_one("SELECT * FROM documents WHERE id = ?", (document_id,))
        if row is None:
            raise NotFoundError(f"Document {document_id} not found")
        return Document.from_row(row)

    def list_for_knowledge_base(self, knowledge_base_id: str) -> list[Document]:
        rows = self.db.query(
            "SELECT * FROM documents WHERE knowledge_base_id = ? ORDER BY created_at",
            (knowledge_base_id,),
        )
        return [Document.from_row(row) for row in rows]

    def mark_processing(self, document_id: str) -> bool:
        return self._transition(
            document_id,
            "status = ?, error_message = NULL",
            (DOC_PROCESSING,),
            (DOC_UPLOADED, DOC_PROCESSING),
        )

    def mark_processed(self, document_id: str, chunk_count: int, character_count: int) -> bool:
        return self._transition(
            document_id,
            "status = ?, chunk_count = ?, character_count = ?, error_message = NULL, processed_at = ?",
            (DOC_PROCESSED, chunk_count, character_count, now_ts()),
            (DOC_PROCESSING,),
        )

    def mark_failed(self, document_id: str, message: str) -> bool:
        return self._transition(
            document_id,
            "status = ?, error_message = ?",
            (DOC_FAILED, truncate(message, 2000)),
            (DOC_UPLOADED, DOC_PROCESSING, DOC_FAILED),
        )

    def reset_for_reprocess(self, document_id: str) -> Document:
        self.db.execute(
            """
            UPDATE documents
            SET status = ?, chunk_count = 0, character_count = 0, error_message = NULL,
                processed_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (DOC_UPLOADED, now_ts(), document_id),
        )
        return self.get(document_id)

    def delete(self, document_id: str) -> bool:
        return self.db.execute("DELETE FROM documents WHERE id = ?", (document_id,)).rowcount == 1

    def _transition(
        self,
        document_id: str,
        assignments: str,
        values: tuple[Any, ...],
        allowed_from: tuple[str, ...],
    ) -> bool:
        placeholders = ", ".join("?" for _ in allowed_from)
        cursor = self.db.execute(
            f"UPDATE documents SET {assignments}, updated_at = ? WHERE id = ? AND status IN ({placeholders})",
            (*values, now_ts(), document_id, *allowed_from),
        )
        if cursor.rowcount != 1:
            logger.warning(
                "Document status transition to %s skipped",
                values[0],
                extra=log_context(document_id=document_id),
            )
            return False
        return True


class IngestPipeline:
    """Coordinate extraction, chunking, embeddings and persistence for one document."""

    def __init__(
        self,
        database: SQLiteDatabase,
        settings: Settings,
        storage: ObjectStorage | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        vector_store: VectorStore | None = None,
        extractors: ExtractorRegistry | None = None,
    ) -> None:
        self.db = database
        self.settings = settings
        self.storage = storage or ObjectStorage(settings.storage_root)
        self.embedding_provider = embedding_provider
        self.vector_store = vector_store or VectorStore(database)
        self.extractors = extractors
        self.documents = DocumentRepository(database)
        self.knowledge_bases = KnowledgeBaseRepository(database, settings)

    def submit(
        self,
        queue: JobQueue,
        knowledge_base_id: str,
        source_uri: str,
        file_name: str,
        file_type: str | None = None,
    ) -> tuple[Document, str]:
        """Register an uploaded file and enqueue its processing job."""
        self.knowledge_bases.get(knowledge_base_id)
        document = self.documents.create(knowledge_base_id, source_uri, file_name, file_type)
        job_id = queue.enqueue(FILE_PROCESSING, self._job_payload(document))
        return document, job_id

    def reprocess(self, queue: JobQueue, document_id: str) -> tuple[Document, str]:
        """Fresh re-processing request: the one path that may move a document backwards."""
        self.documents.get(document_id)
        self.vector_store.delete_document(document_id)
        document = self.documents.reset_for_reprocess(document_id)
        job_id = queue.enqueue(FILE_PROCESSING, self._job_payload(document))
        return document, job_id

    def handle_job(self, job: Job, deadline: Deadline) -> dict[str, Any]:
        document_id = job.payload.get("document_id")
        if not isinstance(document_id, str):
            raise PayloadValidationError("file_processing job without document_id")
        return self.process_document(document_id, deadline).to_dict()

    def on_job_failed(self, job: Job, message: str) -> None:
        document_id = job.payload.get("document_id")
        if not isinstance(document_id, str):
            return
        try:
            self.documents.mark_failed(document_id, message)
        except NotFoundError:
            logger.warning("Failed job refers to a deleted document", extra=log_context(document_id=document_id))

    def process_document(self, document_id: str, deadline: Deadline | None = None) -> IngestOutcome:
        """Run a document through extract -> chunk -> embed -> persist.

        Safe to re-run: rows left by an earlier partial attempt are replaced in
        the same transaction that writes the new ones.
        """
        deadline = deadline or Deadline.unlimited()
        started = time.perf_counter()
        ctx = log_context(document_id=document_id)
        document = self.documents.get(document_id)
        if document.status in (DOC_PROCESSED, DOC_FAILED):
            logger.info("Document already %s, nothing to do", document.status, extra=ctx)
            return IngestOutcome(
                document_id=document.id,
                status=document.status,
                chunk_count=document.chunk_count,
                character_count=document.character_count,
                first_error=document.error_message,
            )

        knowledge_base = self.knowledge_bases.get(document.knowledge_base_id)
        self.documents.mark_processing(document.id)

        deadline.check("extract")
        extraction = extract(document.source_uri, document.file_type, self.storage, self.extractors)
        logger.info("Extracted %d characters", extraction.char_count, extra=ctx)

        deadline.check("chunk")
        chunks = chunk_text(extraction.text, self.settings.chunk_size, self.settings.chunk_overlap)
        logger.info("Created %d chunks", len(chunks), extra=ctx)

        deadline.check("embed")
        generator = EmbeddingGenerator(self._provider_for(knowledge_base))
        batch = generator.embed_batch(
            chunks,
            knowledge_base_id=knowledge_base.id,
            document_id=document.id,
            metadata={"file_name": document.file_name, "file_type": document.file_type},
            deadline=deadline,
        )
        if not batch.ok:
            message = batch.first_error or "No chunks were produced from the document"
            self.documents.mark_failed(document.id, message)
            INGEST_DURATION.labels(outcome="failed").observe(time.perf_counter() - started)
            raise EmbeddingProviderError(message, retryable=False)

        deadline.check("persist")
        with self.db.transaction(immediate=True):
            self.vector_store.delete_document(document.id)
            stored = self.vector_store.insert_batch(batch.rows)
            self.documents.mark_processed(document.id, stored, extraction.char_count)

        INGEST_DURATION.labels(outcome="processed").observe(time.perf_counter() - started)
        logger.info(
            "Processed document",
            extra=log_context(document_id=document.id, chunks=stored, dropped=len(batch.failed_indices)),
        )
        return IngestOutcome(
            document_id=document.id,
            status=DOC_PROCESSED,
            chunk_count=stored,
            character_count=extraction.char_count,
            failed_chunks=batch.failed_indices,
            first_error=batch.first_error,
        )

    def _provider_for(self, knowledge_base: KnowledgeBase) -> EmbeddingProvider:
        if self.embedding_provider is not None:
            return self.embedding_provider
        return get_embedding_provider(
            self.settings,
            name=knowledge_base.embedding_provider,
            model_name=knowledge_base.embedding_model,
            dim=knowledge_base.embedding_dim,
        )

    @staticmethod
    def _job_payload(document: Document) -> dict[str, Any]:
        return {
            "document_id": document.id,
            "knowledge_base_id": document.knowledge_base_id,
            "source_uri": document.source_uri,
            "file_name": document.file_name,
            "file_type": document.file_type,
        }


__all__ = ["DocumentRepository", "IngestPipeline", "KnowledgeBaseRepository"]
