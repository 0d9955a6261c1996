"""ID helpers."""

from __future__ import annotations

import uuid

JOB_PREFIX = "job"
DOCUMENT_PREFIX = "doc"
KNOWLEDGE_BASE_PREFIX = "kb"
CHUNK_PREFIX = "chk"
SESSION_PREFIX = "ses"
MESSAGE_PREFIX = "msg"


def new_id(prefix: str | None = None) -> str:
    """Generate a random UUID4 hex string, namespaced by ``prefix`` when given."""
    base = uuid.uuid4().hex
    return f"{prefix}_{base}" if prefix else base
