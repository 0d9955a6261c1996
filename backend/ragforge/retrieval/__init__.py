"""Vector storage and similarity search."""

from .vector_store import VectorStore

__all__ = ["VectorStore"]
