"""Grounded prompt construction."""

from __future__ import annotations

from typing import Sequence

from ragforge.generation.types import ChatMessage
from ragforge.models.entities import RetrievalResult

SYSTEM_PROMPT = """You are a helpful assistant answering questions about the user's documents.

RULES:
1. Prefer information from the provided context over general knowledge.
2. If the context does not contain the answer, say so plainly before offering anything else.
3. When you use a passage, cite it with its bracket number, e.g. [Context 1].
4. Be concise and factual."""

NO_CONTEXT_NOTE = "No relevant passages were found in the knowledge base for this question."

CONTEXT_SEPARATOR = "\n\n---\n\n"


def build_context_block(results: Sequence[RetrievalResult]) -> str:
    """Number the retrieved passages in ranked order.

    Format::

        [Context 1] (Similarity: 70.7%)
        The chunk text...
    """
    parts = [
        f"[Context {idx}] (Similarity: {result.similarity * 100:.1f}%)\n{result.chunk_text}"
        for idx, result in enumerate(results, 1)
    ]
    return CONTEXT_SEPARATOR.join(parts)


def build_messages(
    query: str,
    results: Sequence[RetrievalResult],
    history: Sequence[ChatMessage] = (),
    history_turns: int = 10,
) -> list[ChatMessage]:
    """System instruction with context, then prior turns, then the user query."""
    if results:
        system = f"{SYSTEM_PROMPT}\n\nCONTEXT:\n{build_context_block(results)}"
    else:
        system = f"{SYSTEM_PROMPT}\n\n{NO_CONTEXT_NOTE}"
    messages = [ChatMessage(role="system", content=system)]
    prior = [message for message in history if message.role in ("user", "assistant")]
    if history_turns > 0:
        messages.extend(prior[-history_turns:])
    messages.append(ChatMessage(role="user", content=query))
    return messages


__all__ = ["SYSTEM_PROMPT", "build_context_block", "build_messages"]
