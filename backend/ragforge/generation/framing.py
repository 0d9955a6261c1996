"""Wire framing adapters: raw response lines in, :class:`StreamEvent` out.

The set of framings is closed. Local daemons speak newline-delimited JSON;
cloud chat APIs speak server-sent events. Providers declare which one they use
and never parse lines themselves.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import orjson

from ragforge.core.errors import GenerationProviderError
from ragforge.generation.types import StreamEvent


class WireFormat(str, Enum):
    NDJSON = "ndjson"
    SSE = "sse"


class FrameDecoder:
    """Stateful line decoder; one instance per stream."""

    wire_format: WireFormat

    def feed(self, line: str) -> list[StreamEvent]:  # pragma: no cover - interface
        raise NotImplementedError


class NdjsonDecoder(FrameDecoder):
    """``{"message": {"content": ...}, "done": false}`` per line (``response`` for /api/generate)."""

    wire_format = WireFormat.NDJSON

    def feed(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line:
            return []
        payload = _loads(line)
        if payload.get("error"):
            raise GenerationProviderError(str(payload["error"]))
        events: list[StreamEvent] = []
        message = payload.get("message") or {}
        text = message.get("content") if isinstance(message, dict) else None
        if text is None:
            text = payload.get("response")
        if text:
            events.append(StreamEvent(kind="token", text=text))
        if payload.get("done"):
            if "eval_count" in payload or "prompt_eval_count" in payload:
                total = int(payload.get("prompt_eval_count") or 0) + int(payload.get("eval_count") or 0)
                events.append(StreamEvent(kind="usage", tokens=total))
            events.append(StreamEvent(kind="done"))
        return events


class SseDecoder(FrameDecoder):
    """``data: {...}`` lines with OpenAI-style deltas, terminated by ``data: [DONE]``."""

    wire_format = WireFormat.SSE

    def feed(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r\n")
        if not line or line.startswith(":") or not line.startswith("data:"):
            return []
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return [StreamEvent(kind="done")]
        payload = _loads(data)
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise GenerationProviderError(str(message))
        events: list[StreamEvent] = []
        for choice in payload.get("choices") or []:
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                events.append(StreamEvent(kind="token", text=text))
        usage = payload.get("usage")
        if isinstance(usage, dict) and usage.get("total_tokens") is not None:
            events.append(StreamEvent(kind="usage", tokens=int(usage["total_tokens"])))
        return events


def decoder_for(wire_format: WireFormat) -> FrameDecoder:
    if wire_format is WireFormat.NDJSON:
        return NdjsonDecoder()
    if wire_format is WireFormat.SSE:
        return SseDecoder()
    raise ValueError(f"Unknown wire format: {wire_format}")


def _loads(data: str) -> dict[str, Any]:
    try:
        payload = orjson.loads(data)
    except orjson.JSONDecodeError as exc:
        raise GenerationProviderError(f"Malformed stream frame: {data[:200]}") from exc
    if not isinstance(payload, dict):
        raise GenerationProviderError(f"Unexpected stream frame: {data[:200]}")
    return payload


__all__ = ["WireFormat", "FrameDecoder", "NdjsonDecoder", "SseDecoder", "decoder_for"]
