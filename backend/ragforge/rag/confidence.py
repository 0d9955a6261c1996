"""Confidence scoring for retrieval-grounded answers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ragforge.models.entities import RetrievalResult

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

HIGH_THRESHOLD = 80.0
MEDIUM_THRESHOLD = 60.0

# Similarity at which the top match alone counts as fully relevant.
FULL_SIMILARITY = 0.6
# Number of supporting sources that saturates the source-count term.
SOURCE_TARGET = 3
TOP_WEIGHT = 0.8
SUPPORT_WEIGHT = 0.2


@dataclass(slots=True, frozen=True)
class Confidence:
    bucket: str
    value: float

    def to_dict(self) -> dict[str, float | str]:
        return {"bucket": self.bucket, "value": self.value}


def bucket_for(value: float) -> str:
    if value >= HIGH_THRESHOLD:
        return HIGH
    if value >= MEDIUM_THRESHOLD:
        return MEDIUM
    return LOW


def score(results: Sequence[RetrievalResult]) -> Confidence:
    """Turn retrieval similarities into a 0-100 value and a bucket.

    The top similarity dominates (80%). The remaining 20% rewards support:
    how many sources were found and how close the runners-up are to the top
    match. An empty result set is always ``low``.
    """
    if not results:
        return Confidence(bucket=LOW, value=0.0)

    similarities = sorted((result.similarity for result in results), reverse=True)
    top = similarities[0]
    relevance = min(1.0, max(0.0, top / FULL_SIMILARITY))

    count_term = min(1.0, len(similarities) / SOURCE_TARGET)
    others = similarities[1:]
    if others and top > 0:
        agreement = sum(min(1.0, max(0.0, sim / top)) for sim in others) / len(others)
    else:
        agreement = 0.0
    support = 0.5 * count_term + 0.5 * agreement

    value = 100.0 * (TOP_WEIGHT * relevance + SUPPORT_WEIGHT * support)
    value = round(min(100.0, max(0.0, value)), 1)
    return Confidence(bucket=bucket_for(value), value=value)


__all__ = ["Confidence", "bucket_for", "score", "HIGH", "MEDIUM", "LOW"]
