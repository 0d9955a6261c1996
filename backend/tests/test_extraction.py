"""Tests for storage resolution and text extraction."""

from __future__ import annotations

from pathlib import Path

import docx
import fitz
import pytest

from ragforge.core.errors import FetchError, ParseError, UnsupportedFormat
from ragforge.ingest.extraction import CsvExtractor, ExtractorRegistry, MarkdownExtractor, extract
from ragforge.ingest.storage import ObjectStorage


@pytest.fixture
def storage(tmp_path: Path) -> ObjectStorage:
    root = tmp_path / "uploads"
    root.mkdir()
    return ObjectStorage(root)


def test_storage_resolves_uris(storage: ObjectStorage, tmp_path: Path) -> None:
    target = tmp_path / "uploads" / "a.txt"
    target.write_text("hello")
    assert storage.resolve_path("a.txt") == target
    assert storage.resolve_path(str(target)) == target
    assert storage.resolve_path(target.as_uri()) == target
    assert storage.read_bytes("a.txt") == b"hello"
    assert ObjectStorage.suffix("https://cdn.example.com/files/Report.PDF?x=1") == ".pdf"


def test_missing_local_file_is_not_retryable(storage: ObjectStorage) -> None:
    with pytest.raises(FetchError) as excinfo:
        storage.read_bytes("missing.txt")
    assert excinfo.value.retryable is False


def test_plain_text_streams_across_blocks(storage: ObjectStorage) -> None:
    text = "héllo wörld " * 20000
    (storage.root / "big.txt").write_text(text, encoding="utf-8")
    result = extract("big.txt", "text/plain", storage)
    assert result.text == text
    assert result.char_count == len(text)
    assert result.metadata["extractor"] == "TextExtractor"


def test_invalid_utf8_is_a_parse_error(storage: ObjectStorage) -> None:
    (storage.root / "bad.txt").write_bytes(b"valid start \xff\xfe broken")
    with pytest.raises(ParseError):
        extract("bad.txt", "txt", storage)


def test_empty_document_is_a_parse_error(storage: ObjectStorage) -> None:
    (storage.root / "empty.txt").write_text("   \n")
    with pytest.raises(ParseError):
        extract("empty.txt", None, storage)


def test_markdown_front_matter_and_body(storage: ObjectStorage) -> None:
    (storage.root / "notes.md").write_text("---\ntitle: Notes\n---\n# Heading\n\nBody text here.\n")
    result = extract("notes.md", "text/markdown", storage)
    assert result.text == "Heading\nBody text here."
    assert result.metadata["front_matter"] == {"title": "Notes"}


def test_csv_rows_are_joined(storage: ObjectStorage) -> None:
    (storage.root / "table.csv").write_text('name,city\nAda,"London, UK"\n,\nAlan,Wilmslow\n')
    result = extract("table.csv", ".csv", storage)
    assert result.text == "name | city\nAda | London, UK\nAlan | Wilmslow"
    assert result.metadata["row_count"] == 3


def test_json_is_flattened(storage: ObjectStorage) -> None:
    (storage.root / "data.json").write_text('{"title": "Guide", "tags": ["a", "b"], "meta": {"pages": 3}}')
    result = extract("data.json", "application/json", storage)
    assert result.text.splitlines() == ["title: Guide", "tags[0]: a", "tags[1]: b", "meta.pages: 3"]


def test_malformed_json_is_a_parse_error(storage: ObjectStorage) -> None:
    (storage.root / "broken.json").write_text("{not json")
    with pytest.raises(ParseError):
        extract("broken.json", None, storage)


def test_docx_paragraphs(storage: ObjectStorage) -> None:
    document = docx.Document()
    document.add_paragraph("First paragraph.")
    document.add_paragraph("")
    document.add_paragraph("Second paragraph.")
    document.save(storage.root / "report.docx")
    result = extract("report.docx", None, storage)
    assert result.text == "First paragraph.\nSecond paragraph."


def test_corrupt_docx_is_a_parse_error(storage: ObjectStorage) -> None:
    (storage.root / "fake.docx").write_bytes(b"this is not a zip file")
    with pytest.raises(ParseError):
        extract("fake.docx", None, storage)


def test_pdf_text_layer(storage: ObjectStorage) -> None:
    pdf = fitz.open()
    page = pdf.new_page()
    page.insert_text((72, 72), "Hello from a PDF page")
    (storage.root / "doc.pdf").write_bytes(pdf.tobytes())
    pdf.close()
    result = extract("doc.pdf", "application/pdf", storage)
    assert "Hello from a PDF page" in result.text
    assert result.metadata["page_count"] == 1


def test_registry_resolution_order() -> None:
    registry = ExtractorRegistry()
    assert isinstance(registry.for_type("text/markdown; charset=utf-8", "upload.bin"), MarkdownExtractor)
    assert isinstance(registry.for_type("csv", "upload.bin"), CsvExtractor)
    assert isinstance(registry.for_type(None, "folder/notes.MD"), MarkdownExtractor)
    with pytest.raises(UnsupportedFormat):
        registry.for_type("image/png", "photo.png")
