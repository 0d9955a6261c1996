"""Knowledge base and document routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ragforge.api.dependencies import get_ingest_pipeline, get_job_queue
from ragforge.ingest.pipeline import IngestPipeline
from ragforge.jobs.queue import JobQueue
from ragforge.models.dto import (
    DeleteResponse,
    DocumentCreateRequest,
    DocumentResponse,
    DocumentSubmitResponse,
    KnowledgeBaseCreateRequest,
    KnowledgeBaseResponse,
    KnowledgeBaseStats,
)

router = APIRouter()


@router.post("/knowledge-bases", response_model=KnowledgeBaseResponse, status_code=201, summary="Create a knowledge base")
async def create_knowledge_base(
    request: KnowledgeBaseCreateRequest,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> KnowledgeBaseResponse:
    knowledge_base = pipeline.knowledge_bases.create(
        request.name,
        embedding_provider=request.embedding_provider,
        embedding_model=request.embedding_model,
        embedding_dim=request.embedding_dim,
    )
    return KnowledgeBaseResponse.from_entity(knowledge_base)


@router.get("/knowledge-bases/{knowledge_base_id}", response_model=KnowledgeBaseResponse)
async def get_knowledge_base(
    knowledge_base_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> KnowledgeBaseResponse:
    return KnowledgeBaseResponse.from_entity(pipeline.knowledge_bases.get(knowledge_base_id))


@router.get(
    "/knowledge-bases/{knowledge_base_id}/stats",
    response_model=KnowledgeBaseStats,
    summary="Embedding statistics and readiness for chat",
)
async def knowledge_base_stats(
    knowledge_base_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> KnowledgeBaseStats:
    pipeline.knowledge_bases.get(knowledge_base_id)
    return KnowledgeBaseStats(**pipeline.vector_store.stats(knowledge_base_id))


@router.get("/knowledge-bases/{knowledge_base_id}/documents", response_model=list[DocumentResponse])
async def list_documents(
    knowledge_base_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> list[DocumentResponse]:
    pipeline.knowledge_bases.get(knowledge_base_id)
    return [DocumentResponse.from_entity(doc) for doc in pipeline.documents.list_for_knowledge_base(knowledge_base_id)]


@router.post("/documents", response_model=DocumentSubmitResponse, status_code=202, summary="Register an uploaded file")
async def submit_document(
    request: DocumentCreateRequest,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
    queue: JobQueue = Depends(get_job_queue),
) -> DocumentSubmitResponse:
    document, job_id = pipeline.submit(
        queue,
        request.knowledge_base_id,
        request.source_uri,
        request.file_name,
        request.file_type,
    )
    return DocumentSubmitResponse(document=DocumentResponse.from_entity(document), job_id=job_id)


@router.get("/documents/{document_id}", response_model=DocumentResponse, summary="Poll document status")
async def get_document(
    document_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> DocumentResponse:
    return DocumentResponse.from_entity(pipeline.documents.get(document_id))


@router.post("/documents/{document_id}/reprocess", response_model=DocumentSubmitResponse, status_code=202)
async def reprocess_document(
    document_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
    queue: JobQueue = Depends(get_job_queue),
) -> DocumentSubmitResponse:
    document, job_id = pipeline.reprocess(queue, document_id)
    return DocumentSubmitResponse(document=DocumentResponse.from_entity(document), job_id=job_id)


@router.delete("/documents/{document_id}", response_model=DeleteResponse, summary="Delete a document and its chunks")
async def delete_document(
    document_id: str,
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> DeleteResponse:
    pipeline.documents.get(document_id)
    pipeline.vector_store.delete_document(document_id)
    deleted = pipeline.documents.delete(document_id)
    return DeleteResponse(status="ok" if deleted else "noop", deleted=int(deleted))


__all__ = ["router"]
