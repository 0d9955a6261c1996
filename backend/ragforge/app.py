"""FastAPI application setup for ragforge."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ragforge.api.dependencies import get_app_settings, get_database, get_job_queue
from ragforge.api.routes_admin import router as admin_router
from ragforge.api.routes_chat import router as chat_router
from ragforge.api.routes_ingest import router as ingest_router
from ragforge.api.routes_jobs import router as jobs_router
from ragforge.api.routes_query import router as query_router
from ragforge.core.errors import RagForgeError
from ragforge.core.logging import configure_logging, get_logger
from ragforge.core.metrics import REQUEST_COUNT

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="ragforge",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5174",
        "http://localhost:5174",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest_router, prefix="", tags=["documents"])
app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
app.include_router(chat_router, prefix="/chat", tags=["chat"])
app.include_router(query_router, prefix="", tags=["query"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.exception_handler(RagForgeError)
async def handle_domain_error(request: Request, exc: RagForgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(endpoint=endpoint, method=request.method, status=str(response.status_code)).inc()
    return response


@app.on_event("startup")
async def startup() -> None:
    """Open the database and apply the schema before the first request."""
    get_app_settings()
    get_database()
    get_job_queue()
