"""Render a chat session as a downloadable transcript."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence

import orjson

from ragforge.core.errors import ExportFormatError
from ragforge.models.entities import ChatMessageRecord
from ragforge.utils.time import now_ts, to_datetime

RULE_WIDTH = 80


@dataclass(slots=True)
class ExportedSession:
    content: bytes
    media_type: str
    filename: str


def _stamp(ts: float) -> str:
    return to_datetime(ts).strftime("%Y-%m-%d %H:%M:%S UTC")


def _clock(ts: float) -> str:
    return to_datetime(ts).strftime("%H:%M:%S")


def _as_json(session: dict[str, Any], messages: Sequence[ChatMessageRecord]) -> bytes:
    document = {
        **session,
        "created_at": to_datetime(session["created_at"]),
        "updated_at": to_datetime(session["updated_at"]),
        "messages": [
            {
                "seq": message.seq,
                "role": message.role,
                "content": message.content,
                "tokens_used": message.tokens_used,
                "confidence": message.confidence,
                "sources": message.sources,
                "error": message.error,
                "created_at": to_datetime(message.created_at),
            }
            for message in messages
        ],
    }
    return orjson.dumps(document, option=orjson.OPT_INDENT_2)


def _as_text(session: dict[str, Any], messages: Sequence[ChatMessageRecord]) -> bytes:
    lines = [
        f"Title: {session.get('title') or 'Untitled chat'}",
        f"Knowledge base: {session['knowledge_base_id']}",
        f"Date: {_stamp(session['created_at'])}",
        "=" * RULE_WIDTH,
        "",
    ]
    for message in messages:
        speaker = "You" if message.role == "user" else "Assistant"
        lines.append(f"[{_clock(message.created_at)}] {speaker}:")
        lines.append(message.content)
        if message.error:
            lines.append(f"(error: {message.error})")
        lines.extend(["", "-" * RULE_WIDTH, ""])
    return "\n".join(lines).encode("utf-8")


def _as_markdown(session: dict[str, Any], messages: Sequence[ChatMessageRecord]) -> bytes:
    lines = [
        f"# {session.get('title') or 'Untitled chat'}",
        "",
        f"**Knowledge base:** {session['knowledge_base_id']}",
        f"**Date:** {_stamp(session['created_at'])}",
        f"**Messages:** {len(messages)}",
        "",
        "---",
        "",
    ]
    for message in messages:
        speaker = "**You**" if message.role == "user" else "**Assistant**"
        lines.extend([f"### {speaker} _({_clock(message.created_at)})_", "", message.content, ""])
        if message.confidence:
            lines.extend([f"_Confidence: {message.confidence['bucket']} ({message.confidence['value']})_", ""])
        if message.error:
            lines.extend([f"> Error: {message.error}", ""])
    lines.extend(["---", "", f"_Exported from ragforge on {_stamp(now_ts())}_"])
    return "\n".join(lines).encode("utf-8")


_RENDERERS: dict[str, tuple[Callable[..., bytes], str]] = {
    "json": (_as_json, "application/json"),
    "txt": (_as_text, "text/plain; charset=utf-8"),
    "md": (_as_markdown, "text/markdown; charset=utf-8"),
}

EXPORT_FORMATS = tuple(_RENDERERS)


def export_session(
    session: dict[str, Any], messages: Sequence[ChatMessageRecord], fmt: str = "json"
) -> ExportedSession:
    if fmt not in _RENDERERS:
        raise ExportFormatError(f"Invalid format {fmt!r}. Supported: {', '.join(EXPORT_FORMATS)}")
    render, media_type = _RENDERERS[fmt]
    return ExportedSession(
        content=render(session, messages),
        media_type=media_type,
        filename=f"conversation-{session['id']}.{fmt}",
    )


__all__ = ["EXPORT_FORMATS", "ExportedSession", "export_session"]
