from __future__ import annotations

import json
import logging

from ragforge.core.logging import ConsoleFormatter, JsonFormatter, log_context


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("ragforge.jobs.queue", logging.INFO, __file__, 1, "Claimed %s job", ("file_processing",), None)
    record.__dict__.update(extra)
    return record


def test_json_formatter_nests_context() -> None:
    line = JsonFormatter().format(_record(**log_context(job_id="job_1", attempt=2, error=None)))
    payload = json.loads(line)
    assert payload["message"] == "Claimed file_processing job"
    assert payload["level"] == "INFO"
    assert payload["context"] == {"job_id": "job_1", "attempt": 2}


def test_json_formatter_without_context() -> None:
    payload = json.loads(JsonFormatter().format(_record()))
    assert "context" not in payload


def test_console_formatter_appends_context() -> None:
    line = ConsoleFormatter().format(_record(**log_context(document_id="doc_9")))
    assert "Claimed file_processing job" in line
    assert line.endswith("document_id=doc_9")
