"""Administrative routes: health and metrics."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Depends

from ragforge.api.dependencies import get_app_settings, get_database, get_gateway, get_job_queue
from ragforge.core.config import Settings
from ragforge.core.metrics import metrics_response
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.generation.gateway import GenerationGateway
from ragforge.ingest.embeddings import get_embedding_provider
from ragforge.jobs.queue import JobQueue

router = APIRouter()


@router.get("/health", summary="Liveness, or provider reachability with deep=true")
async def health(
    deep: bool = False,
    settings: Settings = Depends(get_app_settings),
    db: SQLiteDatabase = Depends(get_database),
    queue: JobQueue = Depends(get_job_queue),
    gateway: GenerationGateway = Depends(get_gateway),
) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": True}
    if not deep:
        return payload
    db.query_one("SELECT 1")
    embedding = get_embedding_provider(settings)
    payload["embedding"] = {
        "provider": embedding.name,
        "model": embedding.model_name,
        "healthy": await asyncio.to_thread(embedding.health_check),
    }
    payload["generation"] = await gateway.health()
    payload["jobs"] = queue.stats()
    payload["ok"] = payload["embedding"]["healthy"] and any(payload["generation"].values())
    return payload


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
