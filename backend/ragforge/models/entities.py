"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

import orjson

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"
JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
JOB_TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

DOC_UPLOADED = "uploaded"
DOC_PROCESSING = "processing"
DOC_PROCESSED = "processed"
DOC_FAILED = "failed"


def _load_json(value: str | bytes | None) -> Any:
    if value is None:
        return None
    return orjson.loads(value)


@dataclass(slots=True)
class Job:
    id: str
    job_type: str
    status: str
    priority: int
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    next_retry_at: float | None
    result: Any
    error: str | None
    created_at: float
    started_at: float | None
    completed_at: float | None
    failed_at: float | None

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            status=row["status"],
            priority=row["priority"],
            payload=_load_json(row["payload"]) or {},
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_retry_at=row["next_retry_at"],
            result=_load_json(row["result"]),
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
        )


@dataclass(slots=True)
class KnowledgeBase:
    id: str
    name: str
    embedding_provider: str
    embedding_model: str
    embedding_dim: int
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "KnowledgeBase":
        return cls(
            id=row["id"],
            name=row["name"],
            embedding_provider=row["embedding_provider"],
            embedding_model=row["embedding_model"],
            embedding_dim=row["embedding_dim"],
            created_at=row["created_at"],
        )


@dataclass(slots=True)
class Document:
    id: str
    knowledge_base_id: str
    source_uri: str
    file_name: str
    file_type: str | None
    status: str
    chunk_count: int
    character_count: int
    error_message: str | None
    processed_at: float | None
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Document":
        return cls(
            id=row["id"],
            knowledge_base_id=row["knowledge_base_id"],
            source_uri=row["source_uri"],
            file_name=row["file_name"],
            file_type=row["file_type"],
            status=row["status"],
            chunk_count=row["chunk_count"],
            character_count=row["character_count"],
            error_message=row["error_message"],
            processed_at=row["processed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(slots=True)
class ChunkRow:
    """A chunk with its embedding, ready for the vector store."""

    knowledge_base_id: str
    document_id: str
    chunk_text: str
    chunk_index: int
    start_char: int
    end_char: int
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RetrievalResult:
    chunk_text: str
    chunk_index: int
    similarity: float
    document_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_text": self.chunk_text,
            "chunk_index": self.chunk_index,
            "similarity": self.similarity,
            "document_id": self.document_id,
        }


@dataclass(slots=True)
class ChatMessageRecord:
    id: str
    session_id: str
    seq: int
    role: str
    content: str
    tokens_used: int | None
    confidence: dict[str, Any] | None
    sources: list[dict[str, Any]] | None
    error: str | None
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChatMessageRecord":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            seq=row["seq"],
            role=row["role"],
            content=row["content"],
            tokens_used=row["tokens_used"],
            confidence=_load_json(row["confidence"]),
            sources=_load_json(row["sources"]),
            error=row["error"],
            created_at=row["created_at"],
        )
