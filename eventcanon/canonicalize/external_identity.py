# eventcanon/canonicalize/external_identity.py
"""
External identity: the per-source string that recognizes "the same upstream
listing" across repeated scrapes. It is the second half of the
(source_id, external_id) key of public.event_sources.

=== POLICIES ===

  venue_only      "{source}_{venue_slug}"
    Pattern-based recurring sources (weekly trivia, open mics). Day of week
    and time describe WHEN, not WHICH, so they never enter the id. One id
    per venue, however many weeks we scrape.

  date_embedded   "{source}_{venue_slug}_{YYYY-MM-DD}"
    Explicit listings (tickets, cinema, exhibitions). Each upstream row is
    its own instance.
    If the date cannot be parsed, the date part is "u" + 10 hex chars of
    sha256(raw date string) so the same unparseable listing keeps its id.

=== RULES ===

  - source: as configured, "-" replaced by "_"
  - venue_slug: upstream venue id if the source has one, else the slugified
    venue name ("Pub Quiz Bar" -> "pub-quiz-bar"), else "unknown-venue"
  - venue_only ids MUST NOT end in a date suffix

=== KNOWN LIMITATION ===

  A venue hosting a weekly quiz and a one-off special under venue_only
  produces the same id for both. The consolidator keeps distinct titles as
  distinct canonical events and re-points the link row to whichever listing
  was processed last; the collision is logged as a data-quality signal.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from hashlib import sha256
from typing import Optional

from ..dates import ResolvedStart, resolve_start
from ..models import CandidateEvent, Source
from .matching import slugify

logger = logging.getLogger(__name__)


class IdentityPolicy(str, Enum):
    VENUE_ONLY = "venue_only"
    DATE_EMBEDDED = "date_embedded"


UNKNOWN_VENUE_SLUG = "unknown-venue"

_DATE_SUFFIX_RE = re.compile(r"_\d{4}-\d{2}-\d{2}$")
_VENUE_ONLY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_]*_[a-z0-9][a-z0-9-]*$")
_DATE_EMBEDDED_RE = re.compile(
    r"^[A-Za-z0-9][A-Za-z0-9_]*_[a-z0-9][a-z0-9-]*_(?:\d{4}-\d{2}-\d{2}|u[0-9a-f]{10})$"
)


def policy_for(source: Source) -> IdentityPolicy:
    try:
        return IdentityPolicy((source.identity_policy or "").strip().lower())
    except ValueError:
        return IdentityPolicy.DATE_EMBEDDED


def normalize_source(source_id: str) -> str:
    return (source_id or "").strip().replace("-", "_")


def venue_slug(candidate: CandidateEvent) -> str:
    hint = candidate.venue_hint
    if hint is None:
        return UNKNOWN_VENUE_SLUG
    return slugify(hint.external_id) or slugify(hint.name) or UNKNOWN_VENUE_SLUG


def _date_component(candidate: CandidateEvent, start: ResolvedStart) -> str:
    if start.start_at is not None:
        return start.start_at.date().isoformat()
    raw = " ".join((candidate.raw_date_string or "").lower().split())
    return "u" + sha256(raw.encode("utf-8")).hexdigest()[:10]


def derive_external_id(
    source: Source,
    candidate: CandidateEvent,
    start: Optional[ResolvedStart] = None,
) -> str:
    """Build the external id for *candidate* under the source's policy.

    A malformed id (e.g. a source_id with spaces) is still returned, since the
    link row only needs it to be stable; the audit failure is logged.
    """
    policy = policy_for(source)
    base = f"{normalize_source(source.source_id)}_{venue_slug(candidate)}"

    if policy is IdentityPolicy.VENUE_ONLY:
        external_id = base
    else:
        if start is None:
            start = resolve_start(candidate)
        external_id = f"{base}_{_date_component(candidate, start)}"

    problem = validate_external_id(policy, external_id)
    if problem:
        logger.warning("[identity] source=%s ext=%r %s", source.source_id, external_id, problem)
    return external_id


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------

def has_date_suffix(external_id: Optional[str]) -> bool:
    return bool(external_id) and bool(_DATE_SUFFIX_RE.search(external_id))


def strip_date_suffix(external_id: str) -> str:
    return _DATE_SUFFIX_RE.sub("", external_id)


def validate_external_id(policy: IdentityPolicy, external_id: Optional[str]) -> Optional[str]:
    """Return None when valid, else a human-readable reason."""
    if not external_id:
        return "external_id is empty"

    if policy is IdentityPolicy.VENUE_ONLY:
        if has_date_suffix(external_id):
            found = _DATE_SUFFIX_RE.search(external_id).group(0)  # type: ignore[union-attr]
            return (
                f"venue_only external_id must NOT contain a date suffix. Found: {found}. "
                "Schedules belong in the recurrence rule, not in the id."
            )
        if not _VENUE_ONLY_RE.match(external_id):
            return "venue_only external_id must match {source}_{venue_slug}"
        return None

    if not _DATE_EMBEDDED_RE.match(external_id):
        return "date_embedded external_id must match {source}_{venue_slug}_{YYYY-MM-DD}"
    return None
