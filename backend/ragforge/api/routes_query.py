"""Retrieval query routes."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends

from ragforge.api.dependencies import get_app_settings, get_orchestrator
from ragforge.core.config import Settings
from ragforge.models.dto import ConfidenceModel, SearchRequest, SearchResponse, SearchResult
from ragforge.rag.confidence import score
from ragforge.rag.orchestrator import RagOrchestrator

router = APIRouter()


@router.post("/search", response_model=SearchResponse, summary="Rank chunks of a knowledge base against a query")
async def search(
    request: SearchRequest,
    orchestrator: RagOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> SearchResponse:
    if request.query_embedding is not None:
        threshold = request.similarity_threshold
        results = await asyncio.to_thread(
            orchestrator.vector_store.search,
            request.query_embedding,
            request.knowledge_base_id,
            top_k=request.match_count or settings.top_k,
            similarity_threshold=settings.similarity_threshold if threshold is None else threshold,
        )
        confidence = score(results)
    else:
        retrieval = await asyncio.to_thread(
            orchestrator.retrieve,
            request.query,
            request.knowledge_base_id,
            top_k=request.match_count,
            similarity_threshold=request.similarity_threshold,
        )
        results, confidence = retrieval.results, retrieval.confidence
    return SearchResponse(
        results=[SearchResult(**result.to_dict()) for result in results],
        confidence=ConfidenceModel(**confidence.to_dict()),
    )


__all__ = ["router"]
