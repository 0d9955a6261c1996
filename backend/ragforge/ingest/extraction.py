"""Turn stored files into plain text."""

from __future__ import annotations

import codecs
import csv
import io
import zipfile
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

import docx
import fitz
import orjson
import yaml
from docx.opc.exceptions import PackageNotFoundError
from markdown_it import MarkdownIt

from ragforge.core.errors import ParseError, UnsupportedFormat
from ragforge.core.logging import get_logger
from ragforge.ingest.storage import ObjectStorage

logger = get_logger(__name__)

_MD = MarkdownIt()


@dataclass(slots=True)
class ExtractionResult:
    text: str
    char_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseExtractor:
    """Common extractor interface."""

    suffixes: tuple[str, ...] = ()
    mime_types: tuple[str, ...] = ()

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError


def _decode_utf8(blocks: Iterable[bytes]) -> Iterator[str]:
    """Decode a byte stream incrementally; multi-byte sequences may span blocks."""
    decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="strict")
    try:
        for block in blocks:
            text = decoder.decode(block)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
    except UnicodeDecodeError as exc:
        raise ParseError(f"Content is not valid UTF-8: {exc}") from exc
    if tail:
        yield tail


class TextExtractor(BaseExtractor):
    suffixes = (".txt", ".text", ".log")
    mime_types = ("text/plain",)

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        text = "".join(_decode_utf8(storage.iter_blocks(uri)))
        return text, {}


class MarkdownExtractor(BaseExtractor):
    suffixes = (".md", ".markdown")
    mime_types = ("text/markdown", "text/x-markdown")

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        raw = "".join(_decode_utf8(storage.iter_blocks(uri)))
        front_matter, body = _split_front_matter(raw)
        metadata: dict[str, Any] = {}
        if front_matter:
            metadata["front_matter"] = front_matter
        return _markdown_to_text(body), metadata


class CsvExtractor(BaseExtractor):
    suffixes = (".csv",)
    mime_types = ("text/csv",)

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        lines = _iter_lines(_decode_utf8(storage.iter_blocks(uri)))
        rendered: list[str] = []
        try:
            for row in csv.reader(lines, strict=True):
                cells = [cell.strip() for cell in row]
                if any(cells):
                    rendered.append(" | ".join(cells))
        except csv.Error as exc:
            raise ParseError(f"Malformed CSV: {exc}") from exc
        return "\n".join(rendered), {"row_count": len(rendered)}


class JsonExtractor(BaseExtractor):
    suffixes = (".json",)
    mime_types = ("application/json",)

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        raw = storage.read_bytes(uri)
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise ParseError(f"Malformed JSON: {exc}") from exc
        lines = list(_flatten_json(data))
        return "\n".join(lines), {}


class PdfExtractor(BaseExtractor):
    suffixes = (".pdf",)
    mime_types = ("application/pdf",)

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        raw = storage.read_bytes(uri)
        try:
            with fitz.open(stream=raw, filetype="pdf") as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
        except (RuntimeError, ValueError) as exc:
            raise ParseError(f"Malformed PDF: {exc}") from exc
        text = "\n\n".join(page for page in pages if page.strip())
        if not text:
            logger.warning("No text layer found in PDF %s", uri)
        return text, {"page_count": len(pages)}


class DocxExtractor(BaseExtractor):
    suffixes = (".docx",)
    mime_types = ("application/vnd.openxmlformats-officedocument.wordprocessingml.document",)

    def extract(self, storage: ObjectStorage, uri: str) -> tuple[str, dict[str, Any]]:
        raw = storage.read_bytes(uri)
        try:
            document = docx.Document(io.BytesIO(raw))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise ParseError(f"Malformed DOCX: {exc}") from exc
        paragraphs = [para.text for para in document.paragraphs if para.text.strip()]
        core = document.core_properties
        metadata = {"title": core.title or None, "author": core.author or None}
        return "\n".join(paragraphs), metadata


class ExtractorRegistry:
    """Pick an extractor from the declared type, falling back to the URI suffix."""

    def __init__(self) -> None:
        self._extractors: list[BaseExtractor] = [
            TextExtractor(),
            MarkdownExtractor(),
            CsvExtractor(),
            JsonExtractor(),
            PdfExtractor(),
            DocxExtractor(),
        ]

    def register(self, extractor: BaseExtractor) -> None:
        self._extractors.insert(0, extractor)

    def for_type(self, declared_type: str | None, uri: str) -> BaseExtractor:
        declared = (declared_type or "").strip().lower()
        if declared:
            mime = declared.split(";", 1)[0].strip()
            suffix = declared if declared.startswith(".") else f".{declared}"
            for extractor in self._extractors:
                if mime in extractor.mime_types or suffix in extractor.suffixes:
                    return extractor
        uri_suffix = ObjectStorage.suffix(uri)
        for extractor in self._extractors:
            if uri_suffix and uri_suffix in extractor.suffixes:
                return extractor
        raise UnsupportedFormat(f"Unsupported file type: {declared_type or uri_suffix or 'unknown'}")


_DEFAULT_REGISTRY = ExtractorRegistry()


def extract(
    uri: str,
    declared_type: str | None,
    storage: ObjectStorage,
    registry: ExtractorRegistry | None = None,
) -> ExtractionResult:
    """Extract plain text from the object at ``uri``.

    Raises ``UnsupportedFormat``, ``FetchError`` or ``ParseError``; has no
    persisted side effects.
    """
    extractor = (registry or _DEFAULT_REGISTRY).for_type(declared_type, uri)
    text, metadata = extractor.extract(storage, uri)
    if not text.strip():
        raise ParseError("No text could be extracted from the document")
    metadata["extractor"] = type(extractor).__name__
    return ExtractionResult(text=text, char_count=len(text), metadata=metadata)


def _iter_lines(chunks: Iterable[str]) -> Iterator[str]:
    pending = ""
    for chunk in chunks:
        pending += chunk
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line + "\n"
    if pending:
        yield pending


def _split_front_matter(text: str) -> tuple[dict[str, object] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2]
    return None, text


def _markdown_to_text(text: str) -> str:
    tokens = _MD.parse(text)
    parts = [token.content.strip() for token in tokens if token.content.strip()]
    return "\n".join(parts) if parts else text


def _flatten_json(value: Any, path: str = "") -> Iterator[str]:
    if isinstance(value, dict):
        for key, item in value.items():
            yield from _flatten_json(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, list):
        for idx, item in enumerate(value):
            yield from _flatten_json(item, f"{path}[{idx}]")
    elif value is not None:
        yield f"{path}: {value}" if path else str(value)


__all__ = ["ExtractionResult", "ExtractorRegistry", "extract"]
