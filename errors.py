#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

ERROR_PREFIX_SUMMARY_FAILED = "Summary failed with error"


class ErrorKind(Enum):
    """Classification of generation failures, decided where the SDK error is caught."""

    OVERLOADED = "overloaded"  # abort the whole batch
    TRANSIENT = "transient"  # retried by the adapter
    TERMINAL = "terminal"  # give up on this item


class GenerationError(Exception):
    """Raised by the generative backend adapter.

    Attributes:
        kind: How callers should react to the failure.
        code: HTTP-ish status code reported by the backend, if any.
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TERMINAL,
        code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.details = details or {}


class FetchError(Exception):
    """Raised when a URL cannot be turned into usable content.

    ``content`` always holds a non-empty, human readable diagnostic payload
    (already wrapped for prompting) and ``content_type`` its media type. The
    pipeline itself only logs the message; the payload is kept for library
    callers that want to show or embed the diagnostic.
    """

    def __init__(self, message: str, content: bytes = b"", content_type: str = ""):
        super().__init__(message)
        self.content = content or message.encode("utf-8")
        self.content_type = content_type


class BatchError(Exception):
    """Aggregate of the per-item/per-feed errors of one run."""

    def __init__(self, errors: List[str], overloaded: bool = False):
        self.errors = list(errors)
        self.overloaded = overloaded
        super().__init__(str(self))

    @property
    def retryable(self) -> bool:
        """True when the batch was cut short by model overload and can be retried later."""
        return self.overloaded

    def __str__(self) -> str:
        return "\n".join(self.errors)


def error_string(err: BaseException) -> str:
    """Normalize an exception into a single-line string suitable for embedding."""
    message = str(err).strip()
    if not message:
        message = err.__class__.__name__
    return " ".join(message.split())


__all__ = [
    "ERROR_PREFIX_SUMMARY_FAILED",
    "ErrorKind",
    "GenerationError",
    "FetchError",
    "BatchError",
    "error_string",
]
