"""
Exception taxonomy for the ingest pipeline.

Only failures the job layer must act on are exceptions. Venue and date
problems are recovered locally, duplicate external ids are an update path and
wrong merges are data-quality signals, so none of those appear here.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by eventcanon."""


class TransientError(EngineError):
    """Network or store hiccup; the task is retried with backoff."""


class RateLimitedError(TransientError):
    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentExtractionError(EngineError):
    """Candidate lacks minimally required fields; never retried."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
