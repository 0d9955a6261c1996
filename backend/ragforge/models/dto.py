"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from ragforge.models.entities import Document, Job, KnowledgeBase
from ragforge.utils.time import to_datetime


class KnowledgeBaseCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    embedding_provider: Literal["hashed", "ollama", "openai"] | None = None
    embedding_model: str | None = None
    embedding_dim: int | None = Field(default=None, gt=0)


class KnowledgeBaseResponse(BaseModel):
    id: str
    name: str
    embedding_provider: str
    embedding_model: str
    embedding_dim: int
    created_at: datetime

    @classmethod
    def from_entity(cls, knowledge_base: KnowledgeBase) -> "KnowledgeBaseResponse":
        return cls(
            id=knowledge_base.id,
            name=knowledge_base.name,
            embedding_provider=knowledge_base.embedding_provider,
            embedding_model=knowledge_base.embedding_model,
            embedding_dim=knowledge_base.embedding_dim,
            created_at=to_datetime(knowledge_base.created_at),
        )


class KnowledgeBaseStats(BaseModel):
    total_chunks: int
    total_documents: int
    average_chunks_per_document: float
    rag_ready: bool


class DocumentCreateRequest(BaseModel):
    knowledge_base_id: str
    source_uri: str = Field(description="Object storage URI, absolute path, or path under the storage root")
    file_name: str
    file_type: str | None = Field(default=None, description="MIME type or extension")


class DocumentResponse(BaseModel):
    id: str
    knowledge_base_id: str
    file_name: str
    file_type: str | None
    source_uri: str
    status: Literal["uploaded", "processing", "processed", "failed"]
    error_message: str | None = None
    chunk_count: int
    character_count: int
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            knowledge_base_id=document.knowledge_base_id,
            file_name=document.file_name,
            file_type=document.file_type,
            source_uri=document.source_uri,
            status=document.status,
            error_message=document.error_message,
            chunk_count=document.chunk_count,
            character_count=document.character_count,
            processed_at=to_datetime(document.processed_at),
            created_at=to_datetime(document.created_at),
            updated_at=to_datetime(document.updated_at),
        )


class DocumentSubmitResponse(BaseModel):
    document: DocumentResponse
    job_id: str


class DeleteResponse(BaseModel):
    status: Literal["ok", "noop"]
    deleted: int


class JobCreateRequest(BaseModel):
    job_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1)


class JobResponse(BaseModel):
    id: str
    job_type: str
    status: Literal["pending", "processing", "completed", "failed", "cancelled"]
    priority: int
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    result: Any = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_entity(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            priority=job.priority,
            payload=job.payload,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            next_retry_at=to_datetime(job.next_retry_at),
            result=job.result,
            error=job.error,
            created_at=to_datetime(job.created_at),
            started_at=to_datetime(job.started_at),
            completed_at=to_datetime(job.completed_at),
            failed_at=to_datetime(job.failed_at),
        )


class JobStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    cancelled: int


class CleanupRequest(BaseModel):
    retention_days: float | None = Field(default=None, ge=0)


class CleanupResponse(BaseModel):
    deleted: int


class SearchRequest(BaseModel):
    """Either ``query`` text (embedded server-side) or a ready ``query_embedding``."""

    knowledge_base_id: str
    query: str | None = None
    query_embedding: list[float] | None = None
    match_count: int | None = Field(default=None, ge=1, le=100)
    similarity_threshold: float | None = Field(default=None, ge=-1.0, le=1.0)

    @model_validator(mode="after")
    def _require_query(self) -> "SearchRequest":
        if not self.query and not self.query_embedding:
            raise ValueError("Provide either query or query_embedding")
        return self


class SearchResult(BaseModel):
    chunk_text: str
    chunk_index: int
    similarity: float
    document_id: str | None = None


class ConfidenceModel(BaseModel):
    bucket: Literal["high", "medium", "low"]
    value: float


class SearchResponse(BaseModel):
    results: list[SearchResult]
    confidence: ConfidenceModel


class SessionCreateRequest(BaseModel):
    knowledge_base_id: str
    title: str | None = None


class SessionResponse(BaseModel):
    id: str
    knowledge_base_id: str
    title: str | None = None
    created_at: datetime
    updated_at: datetime
    message_count: int | None = None

    @classmethod
    def from_row(cls, session: dict[str, Any]) -> "SessionResponse":
        return cls(
            **{
                **session,
                "created_at": to_datetime(session["created_at"]),
                "updated_at": to_datetime(session["updated_at"]),
            }
        )


class SessionUpdateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    limit: int
    offset: int


class ChatOptions(BaseModel):
    provider: Literal["ollama", "openai", "openrouter"] | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    deployment: Literal["local", "cloud"] | None = None


class MessageCreateRequest(ChatOptions):
    content: str = Field(min_length=1)


class MessageResponse(BaseModel):
    id: str
    seq: int
    role: Literal["user", "assistant"]
    content: str
    tokens_used: int | None = None
    confidence: ConfidenceModel | None = None
    sources: list[SearchResult] | None = None
    error: str | None = None
    created_at: datetime


__all__ = [
    "KnowledgeBaseCreateRequest",
    "KnowledgeBaseResponse",
    "KnowledgeBaseStats",
    "DocumentCreateRequest",
    "DocumentResponse",
    "DocumentSubmitResponse",
    "DeleteResponse",
    "JobCreateRequest",
    "JobResponse",
    "JobStatsResponse",
    "CleanupRequest",
    "CleanupResponse",
    "SearchRequest",
    "SearchResult",
    "SearchResponse",
    "ConfidenceModel",
    "SessionCreateRequest",
    "SessionResponse",
    "SessionUpdateRequest",
    "SessionListResponse",
    "ChatOptions",
    "MessageCreateRequest",
    "MessageResponse",
]
