"""Error taxonomy shared by the pipeline, the queue and the chat path."""

from __future__ import annotations


class RagForgeError(Exception):
    """Base class for all domain errors.

    ``retryable`` tells the queue worker whether a job that raised the error
    should be rescheduled or failed terminally.
    """

    retryable: bool = False
    status_code: int = 500

    def __init__(self, *args: object, retryable: bool | None = None) -> None:
        super().__init__(*args)
        if retryable is not None:
            self.retryable = retryable


class NotFoundError(RagForgeError):
    status_code = 404


class PayloadValidationError(RagForgeError):
    status_code = 422


class ExportFormatError(PayloadValidationError):
    status_code = 400


class ExtractionError(RagForgeError):
    """Raised when a stored file cannot be turned into text."""

    status_code = 422


class UnsupportedFormat(ExtractionError):
    pass


class FetchError(ExtractionError):
    """The source could not be reached; another attempt may succeed."""

    retryable = True
    status_code = 502


class ParseError(ExtractionError):
    pass


class EmbeddingProviderError(RagForgeError):
    retryable = True
    status_code = 502


class DimensionMismatch(RagForgeError):
    status_code = 422

    def __init__(self, expected: int, actual: int, chunk_index: int | None = None) -> None:
        where = f" (chunk {chunk_index})" if chunk_index is not None else ""
        super().__init__(f"Expected embedding dimension {expected}, got {actual}{where}")
        self.expected = expected
        self.actual = actual
        self.chunk_index = chunk_index


class RetrievalError(RagForgeError):
    status_code = 502


class GenerationProviderError(RagForgeError):
    status_code = 502


class JobRetryExhausted(RagForgeError):
    def __init__(self, job_id: str, attempts: int, last_error: str | None) -> None:
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {last_error}")
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class JobTimeoutError(RagForgeError):
    retryable = True


class SessionBusyError(RagForgeError):
    status_code = 409


__all__ = [
    "RagForgeError",
    "NotFoundError",
    "PayloadValidationError",
    "ExportFormatError",
    "ExtractionError",
    "UnsupportedFormat",
    "FetchError",
    "ParseError",
    "EmbeddingProviderError",
    "DimensionMismatch",
    "RetrievalError",
    "GenerationProviderError",
    "JobRetryExhausted",
    "JobTimeoutError",
    "SessionBusyError",
]
