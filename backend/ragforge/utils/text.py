"""Text processing helpers."""

from __future__ import annotations

import re

_LINE_BREAK_RE = re.compile(r"\r\n?")
_INLINE_SPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def normalize(text: str) -> str:
    """Unify line endings, collapse spaces and tabs, strip the outer whitespace."""
    text = _LINE_BREAK_RE.sub("\n", text)
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def truncate(text: str, limit: int = 500) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
