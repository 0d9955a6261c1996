"""Resolve stored-file URIs into byte streams."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator
from urllib.parse import unquote, urlparse

import requests

from ragforge.core.errors import FetchError
from ragforge.core.logging import get_logger

logger = get_logger(__name__)

BLOCK_SIZE = 64 * 1024


class ObjectStorage:
    """Read-only view over uploaded files.

    Accepts ``file://`` URIs, absolute paths, paths relative to ``root`` and
    ``http(s)://`` URLs. :meth:`iter_blocks` streams the source in fixed-size
    blocks so text formats never need the whole file in memory.
    """

    def __init__(
        self,
        root: Path,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.root = Path(root).expanduser()
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def is_remote(uri: str) -> bool:
        return urlparse(uri).scheme in {"http", "https"}

    def resolve_path(self, uri: str) -> Path:
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path))
        path = Path(uri).expanduser()
        return path if path.is_absolute() else self.root / path

    @staticmethod
    def suffix(uri: str) -> str:
        parsed = urlparse(uri)
        name = parsed.path if parsed.scheme in {"http", "https", "file"} else uri
        return Path(unquote(name)).suffix.lower()

    def iter_blocks(self, uri: str, block_size: int = BLOCK_SIZE) -> Iterator[bytes]:
        if self.is_remote(uri):
            yield from self._iter_remote(uri, block_size)
            return
        path = self.resolve_path(uri)
        if not path.is_file():
            raise FetchError(f"Stored file not found: {uri}", retryable=False)
        try:
            with path.open("rb") as handle:
                while True:
                    block = handle.read(block_size)
                    if not block:
                        break
                    yield block
        except OSError as exc:
            raise FetchError(f"Cannot read stored file {uri}: {exc}") from exc

    def read_bytes(self, uri: str) -> bytes:
        """Whole-object read for formats that need random access (PDF, DOCX)."""
        return b"".join(self.iter_blocks(uri))

    def _iter_remote(self, uri: str, block_size: int) -> Iterator[bytes]:
        try:
            with self.session.get(uri, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                for block in response.iter_content(chunk_size=block_size):
                    if block:
                        yield block
        except requests.RequestException as exc:
            logger.warning("Failed to fetch %s: %s", uri, exc)
            raise FetchError(f"Failed to fetch {uri}: {exc}") from exc


__all__ = ["ObjectStorage", "BLOCK_SIZE"]
