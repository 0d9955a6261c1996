"""Tests for confidence scoring."""

from __future__ import annotations

import pytest

from ragforge.models.entities import RetrievalResult
from ragforge.rag.confidence import HIGH, LOW, MEDIUM, bucket_for, score


def _results(*similarities: float) -> list[RetrievalResult]:
    return [
        RetrievalResult(chunk_text=f"chunk {i}", chunk_index=i, similarity=sim)
        for i, sim in enumerate(similarities)
    ]


@pytest.mark.parametrize(
    "value,bucket",
    [(0.0, LOW), (59.0, LOW), (59.9, LOW), (60.0, MEDIUM), (79.0, MEDIUM), (79.9, MEDIUM), (80.0, HIGH), (100.0, HIGH)],
)
def test_bucket_boundaries(value: float, bucket: str) -> None:
    assert bucket_for(value) == bucket


def test_empty_results_are_low_zero() -> None:
    confidence = score([])
    assert confidence.bucket == LOW
    assert confidence.value == 0.0


def test_single_strong_match() -> None:
    # relevance saturates at 0.6; one source gives count term 1/3 and no agreement
    confidence = score(_results(0.707))
    assert confidence.value == pytest.approx(83.3)
    assert confidence.bucket == HIGH


def test_weak_single_match_is_low() -> None:
    confidence = score(_results(0.3))
    assert confidence.value == pytest.approx(43.3)
    assert confidence.bucket == LOW


def test_agreeing_sources_raise_confidence() -> None:
    lone = score(_results(0.45))
    supported = score(_results(0.45, 0.45, 0.45))
    assert lone.value == pytest.approx(63.3)
    assert supported.value == pytest.approx(80.0)
    assert lone.bucket == MEDIUM
    assert supported.bucket == HIGH


def test_value_stays_in_range() -> None:
    assert score(_results(1.0, 1.0, 1.0, 1.0)).value == 100.0
    assert score(_results(-0.5)).value >= 0.0
    assert score(_results(0.9, 0.1)).to_dict()["bucket"] == HIGH
