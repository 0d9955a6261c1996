"""Chunk/embedding persistence and nearest-neighbour search."""

from __future__ import annotations

import math
from array import array
from typing import Sequence

import orjson

from ragforge.core.errors import DimensionMismatch, NotFoundError
from ragforge.core.logging import get_logger, log_context
from ragforge.core.metrics import INDEX_SIZE
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.models.entities import ChunkRow, RetrievalResult
from ragforge.utils.ids import CHUNK_PREFIX, new_id
from ragforge.utils.time import now_ts

logger = get_logger(__name__)


class VectorStore:
    """Append-only store of chunk rows scoped by knowledge base.

    Rows are written once in atomic batches and never updated; removal happens
    per document (explicitly, or by cascade when the document is deleted).
    Search is an exact cosine scan over the knowledge base's rows.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def insert_batch(self, rows: Sequence[ChunkRow]) -> int:
        if not rows:
            return 0
        dims: dict[str, int] = {}
        for row in rows:
            if row.knowledge_base_id not in dims:
                dims[row.knowledge_base_id] = self._dimension(row.knowledge_base_id)
            expected = dims[row.knowledge_base_id]
            if len(row.embedding) != expected:
                raise DimensionMismatch(expected, len(row.embedding), chunk_index=row.chunk_index)

        created_at = now_ts()
        params = [
            (
                new_id(CHUNK_PREFIX),
                row.knowledge_base_id,
                row.document_id,
                row.chunk_text,
                row.chunk_index,
                row.start_char,
                row.end_char,
                _to_blob(row.embedding),
                len(row.embedding),
                orjson.dumps(row.metadata).decode("utf-8"),
                created_at,
            )
            for row in sorted(rows, key=lambda item: (item.document_id, item.chunk_index))
        ]
        with self.db.transaction(immediate=True) as cur:
            cur.executemany(
                """
                INSERT INTO chunks (
                    id, knowledge_base_id, document_id, chunk_text, chunk_index,
                    start_char, end_char, embedding, dim, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params,
            )
        self._refresh_gauge()
        logger.info("Stored %d chunk rows", len(params), extra=log_context(knowledge_bases=sorted(dims)))
        return len(params)

    def search(
        self,
        query_vector: Sequence[float],
        knowledge_base_id: str,
        top_k: int = 5,
        similarity_threshold: float = 0.0,
    ) -> list[RetrievalResult]:
        """Rank rows by cosine similarity, keeping those at or above the threshold.

        Ties on similarity are broken by ascending ``chunk_index``.
        """
        expected = self._dimension(knowledge_base_id)
        if len(query_vector) != expected:
            raise DimensionMismatch(expected, len(query_vector))
        if top_k <= 0:
            return []

        query = [float(value) for value in query_vector]
        query_norm = math.sqrt(sum(value * value for value in query))
        rows = self.db.query(
            "SELECT document_id, chunk_text, chunk_index, embedding FROM chunks WHERE knowledge_base_id = ?",
            (knowledge_base_id,),
        )
        scored: list[RetrievalResult] = []
        for row in rows:
            similarity = _cosine(query, query_norm, _from_blob(row["embedding"]))
            if similarity >= similarity_threshold:
                scored.append(
                    RetrievalResult(
                        chunk_text=row["chunk_text"],
                        chunk_index=row["chunk_index"],
                        similarity=similarity,
                        document_id=row["document_id"],
                    )
                )
        scored.sort(key=lambda result: (-result.similarity, result.chunk_index))
        return scored[:top_k]

    def delete_document(self, document_id: str) -> int:
        deleted = self.db.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,)).rowcount
        if deleted:
            self._refresh_gauge()
        return deleted

    def count(self, knowledge_base_id: str | None = None, document_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) AS total FROM chunks WHERE 1 = 1"
        params: list[str] = []
        if knowledge_base_id is not None:
            sql += " AND knowledge_base_id = ?"
            params.append(knowledge_base_id)
        if document_id is not None:
            sql += " AND document_id = ?"
            params.append(document_id)
        row = self.db.query_one(sql, params)
        return int(row["total"]) if row else 0

    def stats(self, knowledge_base_id: str) -> dict[str, float | int | bool]:
        row = self.db.query_one(
            """
            SELECT COUNT(*) AS total_chunks, COUNT(DISTINCT document_id) AS total_documents
            FROM chunks WHERE knowledge_base_id = ?
            """,
            (knowledge_base_id,),
        )
        total_chunks = int(row["total_chunks"]) if row else 0
        total_documents = int(row["total_documents"]) if row else 0
        average = round(total_chunks / total_documents, 2) if total_documents else 0.0
        return {
            "total_chunks": total_chunks,
            "total_documents": total_documents,
            "average_chunks_per_document": average,
            "rag_ready": total_chunks > 0,
        }

    def _dimension(self, knowledge_base_id: str) -> int:
        row = self.db.query_one("SELECT embedding_dim FROM knowledge_bases WHERE id = ?", (knowledge_base_id,))
        if row is None:
            raise NotFoundError(f"Knowledge base {knowledge_base_id} not found")
        return int(row["embedding_dim"])

    def _refresh_gauge(self) -> None:
        INDEX_SIZE.set(self.count())


def _to_blob(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def _from_blob(blob: bytes) -> array:
    floats = array("f")
    floats.frombytes(blob)
    return floats


def _cosine(query: Sequence[float], query_norm: float, vector: Sequence[float]) -> float:
    if query_norm == 0:
        return 0.0
    dot = 0.0
    norm = 0.0
    for x, y in zip(query, vector):
        dot += x * y
        norm += y * y
    if norm == 0:
        return 0.0
    return dot / (query_norm * math.sqrt(norm))


__all__ = ["VectorStore"]
