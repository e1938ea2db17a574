"""
Error taxonomy for DPM Finder.

Hierarchy:
    DPMFinderError
    ├── TransportError        network trouble, worth another try
    │   ├── SourceUnreachable
    │   └── QueryTimeout
    ├── QueryError            the source answered and said no
    │   └── QueryRejected
    ├── FleetAPIError         collector registry failures
    └── StreamError           completion stream dropped mid-answer

A missing collector is not an error; see ``fleet.resolver.CollectorNotFound``.
"""

from __future__ import annotations

from typing import Optional


class DPMFinderError(Exception):
    """Base class for all DPM Finder errors."""


class TransportError(DPMFinderError):
    """Network-level failure talking to a remote service."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class SourceUnreachable(TransportError):
    """The telemetry source could not be reached."""


class QueryTimeout(TransportError):
    """The query did not complete within the request timeout."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(message, source)
        self.timeout = timeout


class QueryError(DPMFinderError):
    """The source processed the request but could not answer it."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        query: Optional[str] = None,
    ):
        super().__init__(message)
        self.source = source
        self.query = query


class QueryRejected(QueryError):
    """Malformed query or source-side error. Not retryable."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        query: Optional[str] = None,
        error_type: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, source, query)
        self.error_type = error_type
        self.status = status


class FleetAPIError(DPMFinderError):
    """Collector registry call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StreamError(DPMFinderError):
    """Completion stream failed; ``partial_text`` holds what arrived."""

    def __init__(self, message: str, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


__all__ = [
    "DPMFinderError",
    "TransportError",
    "SourceUnreachable",
    "QueryTimeout",
    "QueryError",
    "QueryRejected",
    "FleetAPIError",
    "StreamError",
]
