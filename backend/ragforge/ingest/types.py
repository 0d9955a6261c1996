"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class IngestOutcome:
    """Result of one document run through the pipeline."""

    document_id: str
    status: str
    chunk_count: int = 0
    character_count: int = 0
    failed_chunks: list[int] = field(default_factory=list)
    first_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "chunk_count": self.chunk_count,
            "character_count": self.character_count,
            "failed_chunks": list(self.failed_chunks),
            "first_error": self.first_error,
        }


__all__ = ["IngestOutcome"]
