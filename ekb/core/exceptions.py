# core/exceptions.py
"""Domain exceptions shared by services and adapters."""
from typing import Optional

from ekb.core.domain import ErrorCode


class KnowledgeBaseError(Exception):
    """Base error carrying an error code for logging and API mapping"""

    error_code: ErrorCode = ErrorCode.UPSTREAM_FAILED

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    def __str__(self):
        # Format used for logging
        return f"[{self.error_code.value}] {self.message}"


class ValidationError(KnowledgeBaseError):
    """Rejected input (empty query, malformed id); raised before any side effect."""
    error_code = ErrorCode.VALIDATION_FAILED


class UpstreamError(KnowledgeBaseError):
    """Embedder, vector store, database or LLM unreachable or erroring."""
    error_code = ErrorCode.UPSTREAM_FAILED


class DimensionMismatchError(KnowledgeBaseError):
    """Embedder output dimension differs from the vector field. Fatal at startup."""
    error_code = ErrorCode.DIMENSION_MISMATCH


class CacheError(KnowledgeBaseError):
    """Cache read/write failure. Always logged and ignored by callers."""
    error_code = ErrorCode.CACHE_FAILED
