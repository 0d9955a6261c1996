"""Chat sessions: persisted turns streamed as NDJSON envelopes."""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import aclosing
from typing import Any, AsyncIterator

import orjson

from ragforge.core.config import Settings
from ragforge.core.errors import NotFoundError, PayloadValidationError, RagForgeError, SessionBusyError
from ragforge.core.logging import get_logger, log_context
from ragforge.db.sqlite import SQLiteDatabase
from ragforge.generation.types import ChatMessage, GenerationOptions, GenerationResult
from ragforge.models.entities import ChatMessageRecord
from ragforge.rag.confidence import LOW, Confidence
from ragforge.rag.export import ExportedSession, export_session
from ragforge.rag.orchestrator import ChatTurn, RagOrchestrator
from ragforge.utils.ids import MESSAGE_PREFIX, SESSION_PREFIX, new_id
from ragforge.utils.time import now_ts

logger = get_logger(__name__)


class ChatService:
    """Owns chat persistence and the one-stream-per-session rule.

    ``send_message`` and ``regenerate`` claim the session synchronously, so a
    concurrent request fails with ``SessionBusyError`` before any streaming
    starts, and return an async iterator of envelopes. The claim is released
    when the iterator finishes or is closed. Claims older than the generation
    timeout are treated as abandoned.
    """

    def __init__(self, db: SQLiteDatabase, orchestrator: RagOrchestrator, settings: Settings) -> None:
        self.db = db
        self.orchestrator = orchestrator
        self.settings = settings
        self._inflight: dict[str, float] = {}
        self._lock = threading.Lock()

    # Sessions -----------------------------------------------------------

    def create_session(self, knowledge_base_id: str, title: str | None = None) -> dict[str, Any]:
        self.orchestrator.knowledge_bases.get(knowledge_base_id)
        now = now_ts()
        session = {
            "id": new_id(SESSION_PREFIX),
            "knowledge_base_id": knowledge_base_id,
            "title": title,
            "created_at": now,
            "updated_at": now,
        }
        self.db.execute(
            "INSERT INTO chat_sessions (id, knowledge_base_id, title, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            [session["id"], knowledge_base_id, title, now, now],
        )
        logger.info("Created chat session", extra=log_context(session_id=session["id"]))
        return session

    def get_session(self, session_id: str) -> dict[str, Any]:
        row = self.db.query_one("SELECT * FROM chat_sessions WHERE id = ?", [session_id])
        if row is None:
            raise NotFoundError(f"Chat session not found: {session_id}")
        return dict(row)

    def list_sessions(self, knowledge_base_id: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        """Most recently active first, each with its message count."""
        self.orchestrator.knowledge_bases.get(knowledge_base_id)
        rows = self.db.query(
            """
            SELECT s.*, (SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.id) AS message_count
            FROM chat_sessions s
            WHERE s.knowledge_base_id = ?
            ORDER BY s.updated_at DESC, s.rowid DESC
            LIMIT ? OFFSET ?
            """,
            [knowledge_base_id, limit, offset],
        )
        return [dict(row) for row in rows]

    def rename_session(self, session_id: str, title: str) -> dict[str, Any]:
        title = (title or "").strip()
        if not title:
            raise PayloadValidationError("title must be a non-empty string")
        self.get_session(session_id)
        self.db.execute(
            "UPDATE chat_sessions SET title = ?, updated_at = ? WHERE id = ?", [title, now_ts(), session_id]
        )
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> None:
        """Remove a session and, through the foreign key cascade, its messages."""
        self.get_session(session_id)
        with self._lock:
            if self._held(session_id):
                raise SessionBusyError(f"A reply is still streaming for session {session_id}")
            self.db.execute("DELETE FROM chat_sessions WHERE id = ?", [session_id])
        logger.info("Deleted chat session", extra=log_context(session_id=session_id))

    def export(self, session_id: str, fmt: str = "json") -> ExportedSession:
        return export_session(self.get_session(session_id), self.list_messages(session_id), fmt)

    def list_messages(self, session_id: str) -> list[ChatMessageRecord]:
        self.get_session(session_id)
        rows = self.db.query("SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq", [session_id])
        return [ChatMessageRecord.from_row(row) for row in rows]

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return self._held(session_id)

    # Turns --------------------------------------------------------------

    def send_message(
        self, session_id: str, content: str, options: GenerationOptions | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        if not content or not content.strip():
            raise PayloadValidationError("Message content must not be empty")
        session = self.get_session(session_id)
        self._acquire(session_id)
        try:
            history = self._history(session_id)
            self._insert_message(session_id, "user", content)
        except BaseException:
            self._release(session_id)
            raise
        return self._run_turn(session, content, history, options)

    def regenerate(self, session_id: str, options: GenerationOptions | None = None) -> AsyncIterator[dict[str, Any]]:
        """Drop the last assistant reply and answer the last user message again."""
        session = self.get_session(session_id)
        self._acquire(session_id)
        try:
            with self.db.transaction(immediate=True) as cur:
                last = cur.execute(
                    "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq DESC LIMIT 1", [session_id]
                ).fetchone()
                if last is not None and last["role"] == "assistant":
                    cur.execute("DELETE FROM chat_messages WHERE id = ?", [last["id"]])
            messages = self._history(session_id)
            if not messages or messages[-1].role != "user":
                raise PayloadValidationError("Nothing to regenerate in this session")
            query = messages[-1].content
            history = messages[:-1]
        except BaseException:
            self._release(session_id)
            raise
        return self._run_turn(session, query, history, options)

    async def _run_turn(
        self,
        session: dict[str, Any],
        query: str,
        history: list[ChatMessage],
        options: GenerationOptions | None,
    ) -> AsyncIterator[dict[str, Any]]:
        session_id = session["id"]
        try:
            try:
                turn = await self.orchestrator.answer(query, session["knowledge_base_id"], history, options)
            except RagForgeError as exc:
                logger.warning(
                    "Chat turn failed before streaming: %s",
                    exc,
                    extra=log_context(session_id=session_id, error_type=type(exc).__name__),
                )
                error = str(exc)
                await asyncio.to_thread(
                    self._insert_message,
                    session_id,
                    "assistant",
                    "",
                    confidence=Confidence(bucket=LOW, value=0.0).to_dict(),
                    sources=[],
                    error=error,
                )
                yield {"error": error}
                yield {"done": True, "confidence": {"bucket": LOW, "value": 0.0}, "sources": [], "tokens_used": 0}
                return
            async with aclosing(self.envelopes(turn, session_id)) as envelopes:
                async for envelope in envelopes:
                    yield envelope
        finally:
            self._release(session_id)

    async def envelopes(self, turn: ChatTurn, session_id: str | None = None) -> AsyncIterator[dict[str, Any]]:
        """Relay tokens, then an inline error if any, then the closing metadata.

        If the consumer stops early the stream is cancelled and the partial
        reply is still persisted.
        """
        result: GenerationResult | None = None
        try:
            async for token in turn.stream:
                yield {"token": token}
        finally:
            if not turn.stream.finished:
                await turn.stream.cancel()
            result = await turn.stream.result()
            await asyncio.to_thread(self._record_turn, session_id, turn, result)

        if result.error:
            yield {"error": result.error}
        yield {"done": True, **turn.metadata(), "tokens_used": result.tokens_used}

    # Persistence helpers ------------------------------------------------

    def _record_turn(self, session_id: str | None, turn: ChatTurn, result: GenerationResult) -> None:
        metadata = turn.metadata()
        if session_id is not None:
            self._insert_message(
                session_id,
                "assistant",
                result.content,
                tokens_used=result.tokens_used,
                confidence=metadata["confidence"],
                sources=metadata["sources"],
                error=result.error,
            )
        self.db.execute(
            "INSERT INTO usage_events (id, session_id, provider, model, tokens_used, estimated, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                new_id(),
                session_id,
                result.provider,
                result.model,
                result.tokens_used,
                int(result.usage_estimated),
                now_ts(),
            ],
        )
        logger.info(
            "Chat turn finished",
            extra=log_context(
                session_id=session_id,
                provider=result.provider,
                tokens_used=result.tokens_used,
                estimated=result.usage_estimated,
                cancelled=result.cancelled,
                error=result.error,
            ),
        )

    def _insert_message(
        self,
        session_id: str,
        role: str,
        content: str,
        tokens_used: int | None = None,
        confidence: dict[str, Any] | None = None,
        sources: list[dict[str, Any]] | None = None,
        error: str | None = None,
    ) -> str:
        message_id = new_id(MESSAGE_PREFIX)
        created_at = now_ts()
        with self.db.transaction(immediate=True) as cur:
            row = cur.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM chat_messages WHERE session_id = ?", [session_id]
            ).fetchone()
            cur.execute(
                """
                INSERT INTO chat_messages
                    (id, session_id, seq, role, content, tokens_used, confidence, sources, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message_id,
                    session_id,
                    row["seq"] + 1,
                    role,
                    content,
                    tokens_used,
                    orjson.dumps(confidence).decode() if confidence is not None else None,
                    orjson.dumps(sources).decode() if sources is not None else None,
                    error,
                    created_at,
                ],
            )
            cur.execute("UPDATE chat_sessions SET updated_at = ? WHERE id = ?", [created_at, session_id])
        return message_id

    def _history(self, session_id: str) -> list[ChatMessage]:
        rows = self.db.query(
            "SELECT role, content FROM chat_messages WHERE session_id = ? AND content != '' ORDER BY seq",
            [session_id],
        )
        return [ChatMessage(role=row["role"], content=row["content"]) for row in rows]

    def _held(self, session_id: str) -> bool:
        started = self._inflight.get(session_id)
        if started is None:
            return False
        if time.monotonic() - started > self.settings.generation_timeout:
            logger.warning("Releasing abandoned chat stream", extra=log_context(session_id=session_id))
            del self._inflight[session_id]
            return False
        return True

    def _acquire(self, session_id: str) -> None:
        with self._lock:
            if self._held(session_id):
                raise SessionBusyError(f"A reply is already streaming for session {session_id}")
            self._inflight[session_id] = time.monotonic()

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._inflight.pop(session_id, None)


def encode_envelope(envelope: dict[str, Any]) -> bytes:
    return orjson.dumps(envelope) + b"\n"


__all__ = ["ChatService", "encode_envelope"]
