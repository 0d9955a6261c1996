"""Tests for chunker."""

import pytest

from ragforge.ingest.chunker import chunk_text


def test_empty_text_yields_no_chunks() -> None:
    assert chunk_text("", 50, 10) == []
    assert chunk_text("   \n\n  ", 50, 10) == []


def test_short_text_is_a_single_chunk() -> None:
    chunks = chunk_text("Short document.", 50, 10)
    assert len(chunks) == 1
    assert chunks[0].text == "Short document."
    assert (chunks[0].start_char, chunks[0].end_char) == (0, len("Short document."))


def test_two_chunks_share_overlapping_tail(sample_text: str) -> None:
    chunks = chunk_text(sample_text, 50, 10)
    assert len(chunks) == 2
    first, second = chunks
    assert (first.start_char, first.end_char) == (0, 50)
    assert (second.start_char, second.end_char) == (40, len(sample_text))
    assert first.text[-10:] == second.text[:10]
    assert [chunk.index for chunk in chunks] == [0, 1]


@pytest.mark.parametrize("size,overlap", [(10, 0), (30, 7), (64, 16), (100, 99)])
def test_consecutive_spans_overlap_exactly(size: int, overlap: int) -> None:
    text = " ".join(f"word{i}" for i in range(200))
    chunks = chunk_text(text, size, overlap)
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end_char - current.start_char == overlap
        assert previous.end_char - previous.start_char == size
    assert chunks[-1].end_char == len(text)
    assert all(text[c.start_char : c.end_char] == c.text for c in chunks)


@pytest.mark.parametrize("size,overlap", [(0, 0), (10, -1), (10, 10), (10, 20)])
def test_invalid_parameters_are_rejected(size: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        chunk_text("some text", size, overlap)


def test_offsets_refer_to_normalized_text() -> None:
    chunks = chunk_text("alpha\r\n\r\n\r\n\r\nbeta   gamma", 1000, 0)
    assert chunks[0].text == "alpha\n\nbeta gamma"
