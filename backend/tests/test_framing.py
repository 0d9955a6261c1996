"""Tests for wire framing decoders."""

from __future__ import annotations

import pytest

from ragforge.core.errors import GenerationProviderError
from ragforge.generation.framing import NdjsonDecoder, SseDecoder, WireFormat, decoder_for


def _kinds(events) -> list[tuple[str, str, int | None]]:
    return [(event.kind, event.text, event.tokens) for event in events]


def test_ndjson_tokens_usage_and_done() -> None:
    decoder = NdjsonDecoder()
    assert _kinds(decoder.feed('{"message": {"content": "Par"}, "done": false}')) == [("token", "Par", None)]
    assert decoder.feed("   ") == []
    final = decoder.feed('{"message": {"content": ""}, "done": true, "prompt_eval_count": 10, "eval_count": 4}')
    assert _kinds(final) == [("usage", "", 14), ("done", "", None)]


def test_ndjson_generate_endpoint_shape() -> None:
    events = NdjsonDecoder().feed('{"response": "hi", "done": true}')
    assert _kinds(events) == [("token", "hi", None), ("done", "", None)]


def test_ndjson_error_frame_raises() -> None:
    with pytest.raises(GenerationProviderError, match="model not found"):
        NdjsonDecoder().feed('{"error": "model not found"}')


def test_sse_deltas_usage_and_done() -> None:
    decoder = SseDecoder()
    assert decoder.feed(": keep-alive") == []
    assert decoder.feed("event: message") == []
    assert _kinds(decoder.feed('data: {"choices": [{"delta": {"role": "assistant"}}]}')) == []
    assert _kinds(decoder.feed('data: {"choices": [{"delta": {"content": "Hel"}}]}')) == [("token", "Hel", None)]
    assert _kinds(decoder.feed('data: {"choices": [], "usage": {"total_tokens": 21}}')) == [("usage", "", 21)]
    assert _kinds(decoder.feed("data: [DONE]")) == [("done", "", None)]


def test_sse_error_frame_raises() -> None:
    with pytest.raises(GenerationProviderError, match="rate limited"):
        SseDecoder().feed('data: {"error": {"message": "rate limited"}}')


@pytest.mark.parametrize("decoder", [NdjsonDecoder(), SseDecoder()])
def test_malformed_frames_raise(decoder) -> None:
    line = "data: {oops" if isinstance(decoder, SseDecoder) else "{oops"
    with pytest.raises(GenerationProviderError):
        decoder.feed(line)


def test_decoder_for_each_format() -> None:
    assert isinstance(decoder_for(WireFormat.NDJSON), NdjsonDecoder)
    assert isinstance(decoder_for(WireFormat.SSE), SseDecoder)
