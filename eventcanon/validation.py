"""
Gate for candidates that can never become a canonical event.

A candidate is rejected (permanently, never retried) when it lacks:
  - a real title (junk, header artifacts and promo-tag-only titles such as
    "(Sold Out)" count as missing)
  - any venue information (name, upstream venue id or coordinates)
  - any date signal (start_at, raw date string, recurrence rule, or an
    explicit 'unknown' occurrence type hint)

Rules are deterministic (no NLP, no heuristics).
"""
from __future__ import annotations

import re

from .canonicalize.matching import normalize_title
from .errors import PermanentExtractionError
from .models import CandidateEvent

# Structural noise that extraction sometimes hands over as titles
JUNK_TITLES_EXACT: frozenset[str] = frozenset({
    "tba",
    "tbc",
    "untitled",
    "event",
    "events",
    "n/a",
})

JUNK_TITLE_PREFIXES: tuple[str, ...] = (
    "header",
    "footer",
    "cookie",
)

# Title is purely whitespace, digits, punctuation: no real words
_STRUCTURAL_ONLY_RE = re.compile(r"^[\s\d\W]*$", re.UNICODE)


def is_junk_title(title: str | None) -> bool:
    t = (title or "").strip()
    if not t:
        return True
    low = t.lower()
    if low in JUNK_TITLES_EXACT:
        return True
    if any(low.startswith(p) for p in JUNK_TITLE_PREFIXES):
        return True
    if _STRUCTURAL_ONLY_RE.fullmatch(t):
        return True
    # "(Sold Out)", "[Premiere]": nothing left once promo tags are stripped
    return not normalize_title(t)


def _has_venue(candidate: CandidateEvent) -> bool:
    hint = candidate.venue_hint
    if hint is None:
        return False
    return bool((hint.name or "").strip() or (hint.external_id or "").strip() or hint.has_coordinates)


def _has_date_signal(candidate: CandidateEvent) -> bool:
    return bool(
        candidate.start_at is not None
        or (candidate.raw_date_string or "").strip()
        or candidate.recurrence_rule
        or candidate.occurrence_type_hint == "unknown"
    )


def validate_candidate(candidate: CandidateEvent) -> None:
    """Raise PermanentExtractionError naming the first missing field."""
    if is_junk_title(candidate.title):
        raise PermanentExtractionError("missing_title")
    if not _has_venue(candidate):
        raise PermanentExtractionError("missing_venue")
    if not _has_date_signal(candidate):
        raise PermanentExtractionError("missing_date")
