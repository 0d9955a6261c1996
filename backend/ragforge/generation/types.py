"""Request/response types shared by every completion provider."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]
Deployment = Literal["local", "cloud"]


@dataclass(slots=True)
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class GenerationOptions:
    """Per-call generation settings.

    ``deployment`` is passed by the caller rather than sensed from the runtime;
    it only matters when ``provider`` is not given.
    """

    provider: str | None = None
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2000
    deployment: Deployment = "local"


@dataclass(slots=True)
class StreamEvent:
    """One decoded wire frame: a token, a usage report or the end of stream."""

    kind: Literal["token", "usage", "done"]
    text: str = ""
    tokens: int | None = None


@dataclass(slots=True)
class GenerationResult:
    content: str
    tokens_used: int
    usage_estimated: bool
    provider: str
    model: str
    cancelled: bool = False
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    """Approximate token count (one token per four characters).

    Only an estimate: it feeds quota tracking when a provider reports no usage,
    and results carrying it are flagged ``usage_estimated``.
    """
    return math.ceil(len(text) / 4)


__all__ = [
    "ChatMessage",
    "GenerationOptions",
    "GenerationResult",
    "StreamEvent",
    "estimate_tokens",
]
