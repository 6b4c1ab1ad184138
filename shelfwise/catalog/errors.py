from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    AUTH_REQUIRED = "auth_required"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    NETWORK = "network"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    CANCELLED = "cancelled"
    RETRY_ABORTED = "retry_aborted"
    NO_ACQUISITION = "no_acquisition"


class CatalogError(RuntimeError):
    """Base class for catalog fetch, parse and acquisition failures."""


class FeedParseError(CatalogError):
    """Raised when a feed body is not well-formed XML or JSON."""

    def __init__(self, message: str, snippet: str = "") -> None:
        super().__init__(message)
        self.snippet = snippet


class CatalogFetchError(CatalogError):
    """Raised when a catalog page cannot be downloaded."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AcquisitionError(CatalogError):
    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        auth_document: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.auth_document = auth_document


class AuthRequired(AcquisitionError):
    kind = ErrorKind.AUTH_REQUIRED


class RateLimited(AcquisitionError):
    kind = ErrorKind.RATE_LIMITED


class Unavailable(AcquisitionError):
    kind = ErrorKind.UNAVAILABLE


class NetworkError(AcquisitionError):
    kind = ErrorKind.NETWORK


class UnsupportedFormat(AcquisitionError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class TooManyRedirects(AcquisitionError):
    kind = ErrorKind.TOO_MANY_REDIRECTS


class ResolutionCancelled(AcquisitionError):
    kind = ErrorKind.CANCELLED


class RetryAborted(AcquisitionError):
    kind = ErrorKind.RETRY_ABORTED


class NoAcquisitionFound(AcquisitionError):
    kind = ErrorKind.NO_ACQUISITION


def snippet_of(payload: Any, limit: int = 200) -> str:
    text = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else str(payload or "")
    return text.strip()[:limit]
