"""
Error types for the metrics cache backend.

Not-found keys/files and dictionary misses are reported as results, never
raised. Only transport failures during population/retrieval, malformed keys
and unreadable dictionary files surface as exceptions.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel


class FailureDescription(BaseModel):
    """Structured failure payload (message + cause)."""
    code: str
    message: str
    cause: Optional[str] = None
    details: Dict[str, Any] = {}


class MetricsBackendError(Exception):
    """Base exception for the backend."""

    code = "METRICS_BACKEND_ERROR"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.cause = cause
        self.details = details or {}
        super().__init__(message)

    def to_failure(self) -> FailureDescription:
        """Convert to a failure description."""
        return FailureDescription(
            code=self.code,
            message=self.message,
            cause=repr(self.cause) if self.cause is not None else None,
            details=self.details,
        )


class KeyParseError(MetricsBackendError):
    """A cache key does not match the shape of the requested scheme."""

    code = "KEY_PARSE_ERROR"


class DictionaryError(MetricsBackendError):
    """A dictionary could not be built, read or applied to files."""

    code = "DICTIONARY_ERROR"


class PopulationError(MetricsBackendError):
    """A batch write failed; remaining batches were not attempted."""

    code = "POPULATION_ERROR"

    def __init__(self, message: str, completed: int, cause: Optional[BaseException] = None):
        super().__init__(message, cause, {"completed": completed})
        self.completed = completed


class RetrievalError(MetricsBackendError):
    """A multi-get chunk failed at the transport level."""

    code = "RETRIEVAL_ERROR"

    def __init__(self, message: str, completed_chunks: int, cause: Optional[BaseException] = None):
        super().__init__(message, cause, {"completed_chunks": completed_chunks})
        self.completed_chunks = completed_chunks


class AggregationError(MetricsBackendError):
    """A source exists but cannot be read or parsed."""

    code = "AGGREGATION_ERROR"
