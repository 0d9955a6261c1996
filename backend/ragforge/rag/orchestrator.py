"""Retrieval-augmented answering: embed, search, score, prompt, generate."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

from ragforge.core.config import Settings
from ragforge.core.errors import DimensionMismatch, EmbeddingProviderError, RetrievalError
from ragforge.core.logging import get_logger, log_context
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.generation.gateway import GenerationGateway, TokenStream
from ragforge.generation.types import ChatMessage, GenerationOptions
from ragforge.ingest.embeddings import EmbeddingProvider, get_embedding_provider
from ragforge.ingest.pipeline import KnowledgeBaseRepository
from ragforge.models.entities import RetrievalResult
from ragforge.rag.confidence import LOW, Confidence, score
from ragforge.rag.prompt import build_messages
from ragforge.retrieval.vector_store import VectorStore

logger = get_logger(__name__)


@dataclass(slots=True)
class Retrieval:
    results: list[RetrievalResult]
    confidence: Confidence

    def sources(self) -> list[dict[str, Any]]:
        return [
            {
                "chunk_text": result.chunk_text,
                "chunk_index": result.chunk_index,
                "similarity": round(result.similarity, 4),
                "document_id": result.document_id,
            }
            for result in self.results
        ]


@dataclass(slots=True)
class ChatTurn:
    """A started generation plus the metadata to deliver once it finishes."""

    stream: TokenStream
    retrieval: Retrieval
    messages: list[ChatMessage] = field(default_factory=list)

    def metadata(self) -> dict[str, Any]:
        return {"confidence": self.retrieval.confidence.to_dict(), "sources": self.retrieval.sources()}


class RagOrchestrator:
    def __init__(
        self,
        db: SQLiteDatabase,
        settings: Settings,
        gateway: GenerationGateway,
        vector_store: VectorStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.vector_store = vector_store or VectorStore(db)
        self.embedding_provider = embedding_provider
        self.knowledge_bases = KnowledgeBaseRepository(db, settings)

    def retrieve(
        self,
        query_text: str,
        knowledge_base_id: str,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
    ) -> Retrieval:
        """Embed the query with the knowledge base's own provider and search it.

        Raises ``RetrievalError`` when the query cannot be embedded; finding
        nothing above the threshold is not an error.
        """
        knowledge_base = self.knowledge_bases.get(knowledge_base_id)
        provider = self.embedding_provider or get_embedding_provider(
            self.settings,
            name=knowledge_base.embedding_provider,
            model_name=knowledge_base.embedding_model,
            dim=knowledge_base.embedding_dim,
        )
        try:
            query_vector = provider.embed(query_text)
        except EmbeddingProviderError as exc:
            raise RetrievalError(f"Could not embed query: {exc}") from exc
        try:
            results = self.vector_store.search(
                query_vector,
                knowledge_base_id,
                top_k=top_k or self.settings.top_k,
                similarity_threshold=(
                    self.settings.similarity_threshold if similarity_threshold is None else similarity_threshold
                ),
            )
        except DimensionMismatch as exc:
            raise RetrievalError(f"Query embedding does not fit the knowledge base: {exc}") from exc

        confidence = score(results)
        if not results:
            confidence = Confidence(bucket=LOW, value=0.0)
            logger.info("No chunks above threshold", extra=log_context(knowledge_base_id=knowledge_base_id))
        else:
            logger.info(
                "Retrieved %d chunks",
                len(results),
                extra=log_context(
                    knowledge_base_id=knowledge_base_id,
                    top_similarity=round(results[0].similarity, 4),
                    confidence=confidence.value,
                ),
            )
        return Retrieval(results=results, confidence=confidence)

    def build_messages(
        self,
        query_text: str,
        results: Sequence[RetrievalResult],
        history: Sequence[ChatMessage] = (),
    ) -> list[ChatMessage]:
        return build_messages(query_text, results, history, history_turns=self.settings.history_turns)

    async def answer(
        self,
        query_text: str,
        knowledge_base_id: str,
        history: Sequence[ChatMessage] = (),
        options: GenerationOptions | None = None,
    ) -> ChatTurn:
        """Retrieve, then start generation. Retrieval failures abort before any provider call."""
        retrieval = await asyncio.to_thread(self.retrieve, query_text, knowledge_base_id)
        messages = self.build_messages(query_text, retrieval.results, history)
        stream = self.gateway.open_stream(messages, options or self.gateway.default_options())
        return ChatTurn(stream=stream, retrieval=retrieval, messages=messages)


__all__ = ["ChatTurn", "RagOrchestrator", "Retrieval"]
