"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from ragforge.core.config import Settings, get_settings
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.generation.gateway import GenerationGateway
from ragforge.ingest.pipeline import IngestPipeline
from ragforge.jobs.queue import JobQueue
from ragforge.rag.chat import ChatService
from ragforge.rag.orchestrator import RagOrchestrator
from ragforge.retrieval import VectorStore

_DB: SQLiteDatabase | None = None
_QUEUE: JobQueue | None = None
_VECTOR_STORE: VectorStore | None = None
_PIPELINE: IngestPipeline | None = None
_GATEWAY: GenerationGateway | None = None
_ORCHESTRATOR: RagOrchestrator | None = None
_CHAT_SERVICE: ChatService | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_job_queue() -> JobQueue:
    global _QUEUE
    if _QUEUE is None:
        _QUEUE = JobQueue(get_database(), get_app_settings())
    return _QUEUE


def get_vector_store() -> VectorStore:
    global _VECTOR_STORE
    if _VECTOR_STORE is None:
        _VECTOR_STORE = VectorStore(get_database())
    return _VECTOR_STORE


def get_ingest_pipeline() -> IngestPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = IngestPipeline(
            database=get_database(),
            settings=get_app_settings(),
            vector_store=get_vector_store(),
        )
    return _PIPELINE


def get_gateway() -> GenerationGateway:
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = GenerationGateway(get_app_settings())
    return _GATEWAY


def get_orchestrator() -> RagOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = RagOrchestrator(
            db=get_database(),
            settings=get_app_settings(),
            gateway=get_gateway(),
            vector_store=get_vector_store(),
        )
    return _ORCHESTRATOR


def get_chat_service() -> ChatService:
    global _CHAT_SERVICE
    if _CHAT_SERVICE is None:
        _CHAT_SERVICE = ChatService(get_database(), get_orchestrator(), get_app_settings())
    return _CHAT_SERVICE


def reset_dependencies() -> None:
    """Drop every singleton so the next request rebuilds from fresh settings."""
    global _DB, _QUEUE, _VECTOR_STORE, _PIPELINE, _GATEWAY, _ORCHESTRATOR, _CHAT_SERVICE
    get_app_settings.cache_clear()
    if _DB is not None:
        _DB.close()
    _DB = None
    _QUEUE = None
    _VECTOR_STORE = None
    _PIPELINE = None
    _GATEWAY = None
    _ORCHESTRATOR = None
    _CHAT_SERVICE = None


__all__ = [
    "get_app_settings",
    "get_database",
    "get_job_queue",
    "get_vector_store",
    "get_ingest_pipeline",
    "get_gateway",
    "get_orchestrator",
    "get_chat_service",
    "reset_dependencies",
]
