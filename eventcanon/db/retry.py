from __future__ import annotations

import logging
import random
import time
from typing import Any

import httpx
from postgrest.exceptions import APIError

logger = logging.getLogger(__name__)

# PostgREST over HTTP/2 drops connections under load; these are safe to resend.
TRANSIENT_HTTP_ERRORS = (
    httpx.RemoteProtocolError,
    httpx.ReadTimeout,
    httpx.ConnectError,
    httpx.WriteError,
)


def execute_with_retry(rb: Any, *, tries: int = 6, base_sleep: float = 0.5) -> Any:
    """Run rb.execute(), resending on transport errors with exponential backoff."""
    for attempt in range(1, tries + 1):
        try:
            return rb.execute()
        except TRANSIENT_HTTP_ERRORS as e:
            if attempt == tries:
                raise
            delay = base_sleep * (2 ** (attempt - 1)) + random.random() * 0.25
            logger.warning(
                "[db] %s attempt=%d/%d retrying in %.2fs",
                type(e).__name__, attempt, tries, delay,
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def is_unique_violation(err: Exception) -> bool:
    """Postgres 23505 unique_violation, however PostgREST surfaced it."""
    if isinstance(err, APIError) and str(getattr(err, "code", "") or "") == "23505":
        return True
    s = repr(err).lower()
    return "23505" in s or "duplicate key value violates unique constraint" in s
