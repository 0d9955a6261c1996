"""Embedding providers and the per-document embedding pass."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

import requests

from ragforge.core.config import Settings
from ragforge.core.errors import EmbeddingProviderError
from ragforge.core.logging import get_logger, log_context
from ragforge.core.metrics import EMBEDDING_FAILURES
from ragforge.ingest.chunker import TextChunk
from ragforge.models.entities import ChunkRow

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class EmbeddingProvider:
    """Common provider interface: one text in, one fixed-length vector out."""

    name = "base"

    def __init__(self, model_name: str, dim: int) -> None:
        self.model_name = model_name
        self.dim = dim

    def embed(self, text: str) -> list[float]:  # pragma: no cover - interface
        raise NotImplementedError

    def health_check(self) -> bool:
        return True

    def _validate(self, vector: Any) -> list[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingProviderError(f"{self.name} returned no embedding")
        if len(vector) != self.dim:
            raise EmbeddingProviderError(
                f"{self.name} returned a {len(vector)}-dimensional vector, expected {self.dim}"
            )
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError) as exc:
            raise EmbeddingProviderError(f"{self.name} returned a non-numeric embedding") from exc


class HashedEmbeddingProvider(EmbeddingProvider):
    """Lightweight hashed bag-of-words embedding with deterministic output.

    Needs no network and no model download, which makes it the offline default
    and gives tests reproducible similarities.
    """

    name = "hashed"

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for token in _tokenize(text):
            vector[_hash_token(token, self.dim)] += 1.0
        _normalize(vector)
        return vector


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama daemon (``POST /api/embeddings``)."""

    name = "ollama"

    def __init__(
        self,
        model_name: str,
        dim: int,
        base_url: str,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(model_name, dim)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingProviderError("Cannot generate embedding for empty text", retryable=False)
        url = f"{self.base_url}/api/embeddings"
        try:
            response = self.session.post(
                url,
                json={"model": self.model_name, "prompt": text},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise EmbeddingProviderError("Ollama API timed out") from exc
        except requests.exceptions.ConnectionError as exc:
            raise EmbeddingProviderError(f"Cannot connect to Ollama at {self.base_url}") from exc
        except requests.exceptions.RequestException as exc:
            raise EmbeddingProviderError(f"Request failed: {exc}") from exc

        if response.status_code != 200:
            detail = response.text[:500] if response.text else "No details"
            raise EmbeddingProviderError(f"Ollama API returned {response.status_code}: {detail}")
        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError("Ollama returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise EmbeddingProviderError(f"Ollama returned an unexpected {type(data).__name__} body")
        return self._validate(data.get("embedding"))

    def health_check(self) -> bool:
        """Check the daemon is reachable and has the embedding model pulled."""
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=5)
            if response.status_code != 200:
                logger.error("Ollama returned %s", response.status_code)
                return False
            models = [m.get("name", "") for m in response.json().get("models", [])]
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Ollama connection test failed: %s", exc)
            return False
        if not any(name.startswith(self.model_name) for name in models):
            logger.warning("Model %s not found. Available: %s", self.model_name, models)
            return False
        return True


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from an OpenAI-compatible ``POST /embeddings`` endpoint."""

    name = "openai"

    def __init__(
        self,
        model_name: str,
        dim: int,
        base_url: str,
        api_key: str | None,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(model_name, dim)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise EmbeddingProviderError("No API key configured for OpenAI embeddings", retryable=False)
        try:
            response = self.session.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model_name, "input": text},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise EmbeddingProviderError(f"OpenAI embedding request failed: {exc}") from exc
        if response.status_code != 200:
            raise EmbeddingProviderError(
                f"OpenAI API returned {response.status_code}: {response.text[:500]}"
            )
        try:
            data = response.json()["data"]
            vector = data[0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EmbeddingProviderError("Malformed OpenAI embedding response") from exc
        return self._validate(vector)


_PROVIDERS: dict[tuple[str, str, int], EmbeddingProvider] = {}


def get_embedding_provider(
    settings: Settings,
    name: str | None = None,
    model_name: str | None = None,
    dim: int | None = None,
) -> EmbeddingProvider:
    """Return a cached provider; arguments default to the configured ones."""
    provider_name = name or settings.embedding_provider
    model = model_name or settings.embedding_model
    size = dim or settings.embedding_dim
    key = (provider_name, model, size)
    if key not in _PROVIDERS:
        if provider_name == "hashed":
            provider: EmbeddingProvider = HashedEmbeddingProvider(model, size)
        elif provider_name == "ollama":
            provider = OllamaEmbeddingProvider(
                model, size, settings.ollama_base_url, timeout=settings.embedding_timeout
            )
        elif provider_name == "openai":
            provider = OpenAIEmbeddingProvider(
                model,
                size,
                settings.openai_base_url,
                settings.openai_api_key,
                timeout=settings.embedding_timeout,
            )
        else:
            raise ValueError(f"Unknown embedding provider: {provider_name}")
        _PROVIDERS[key] = provider
    return _PROVIDERS[key]


def clear_provider_cache() -> None:
    _PROVIDERS.clear()


@dataclass(slots=True)
class EmbeddingBatch:
    rows: list[ChunkRow] = field(default_factory=list)
    first_error: str | None = None
    failed_indices: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.rows)


class EmbeddingGenerator:
    """Embed a document's chunks one by one, tolerating per-chunk failure.

    A chunk whose embedding call fails is dropped and the first error kept for
    diagnostics; the batch counts as successful if any row was produced.
    """

    def __init__(self, provider: EmbeddingProvider) -> None:
        self.provider = provider

    def embed_batch(
        self,
        chunks: Sequence[TextChunk],
        knowledge_base_id: str,
        document_id: str,
        metadata: dict[str, Any] | None = None,
        deadline: Any = None,
    ) -> EmbeddingBatch:
        batch = EmbeddingBatch()
        base_meta = dict(metadata or {})
        for chunk in chunks:
            if deadline is not None:
                deadline.check("embed")
            try:
                vector = self.provider.embed(chunk.text)
            except EmbeddingProviderError as exc:
                EMBEDDING_FAILURES.labels(provider=self.provider.name).inc()
                batch.failed_indices.append(chunk.index)
                if batch.first_error is None:
                    batch.first_error = str(exc)
                logger.warning(
                    "Dropping chunk after embedding failure: %s",
                    exc,
                    extra=log_context(document_id=document_id, chunk_index=chunk.index),
                )
                continue
            batch.rows.append(
                ChunkRow(
                    knowledge_base_id=knowledge_base_id,
                    document_id=document_id,
                    chunk_text=chunk.text,
                    chunk_index=chunk.index,
                    start_char=chunk.start_char,
                    end_char=chunk.end_char,
                    embedding=vector,
                    metadata={**base_meta, "chunk_index": chunk.index},
                )
            )
        if batch.failed_indices:
            logger.warning(
                "Embedded %d of %d chunks",
                len(batch.rows),
                len(chunks),
                extra=log_context(document_id=document_id, failed_indices=batch.failed_indices),
            )
        return batch


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "EmbeddingProvider",
    "HashedEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "EmbeddingBatch",
    "EmbeddingGenerator",
    "get_embedding_provider",
    "clear_provider_cache",
]
