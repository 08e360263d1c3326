# eventcanon/canonicalize/dedupe_key.py
"""
Dedupe-key contracts backing the unique constraints.

=== VENUES (v1) ===

Format:  "v1|<sha256_hex>"

  seed = "<normalized_name>|<city_key or ''>|<lat rounded 3dp>|<lng rounded 3dp>"

  Three decimals is a ~110 m cell. The radius lookup (50 m by default) is
  what deduplicates; the key only turns two concurrent inserts of the same
  brand-new venue into one row plus one 23505. Two inserts landing on
  opposite sides of a cell edge can both succeed; the resolver re-runs the
  radius lookup after inserting and flags such twins as venue_duplicate
  signals. Later lookups settle on the nearest row.

=== CANONICAL EVENTS (e1) ===

Format:  "e1|<sha256_hex>"

  Aggregatable sources:
    seed = "<venue_id>|<normalized_title>"
    Identical normalized titles at one venue always consolidate (Jaro-Winkler
    1.0), so at most one canonical row may hold this seed. Concurrent creates
    collapse into one row; the loser consolidates into it.

  Non-aggregatable sources:
    seed = "iso|<source_id>|<external_id>"
    Every upstream listing is its own canonical event.

  Properties:
    - Deterministic, depends only on the inputs
    - e1 keys never collide with v1 keys (prefix)
"""
from __future__ import annotations

from hashlib import sha256
from typing import Optional

from .matching import city_key, normalize_name

VENUE_VERSION = "v1"
EVENT_VERSION = "e1"


def _sha256_hex(s: str) -> str:
    return sha256(s.encode("utf-8")).hexdigest()


def compute_venue_dedupe_key(
    *,
    name: Optional[str],
    city: Optional[str],
    latitude: float,
    longitude: float,
) -> str:
    seed = "|".join([
        normalize_name(name),
        city_key(city) or "",
        f"{round(latitude, 3):.3f}",
        f"{round(longitude, 3):.3f}",
    ])
    return f"{VENUE_VERSION}|{_sha256_hex(seed)}"


def compute_event_dedupe_key(
    *,
    venue_id: str,
    normalized_title: str,
) -> str:
    if not normalized_title:
        raise ValueError(f"Cannot compute event dedupe_key: empty title at venue {venue_id}")
    seed = f"{venue_id}|{normalized_title}"
    return f"{EVENT_VERSION}|{_sha256_hex(seed)}"


def compute_isolated_event_dedupe_key(
    *,
    source_id: str,
    external_id: str,
) -> str:
    seed = f"iso|{source_id}|{external_id}"
    return f"{EVENT_VERSION}|{_sha256_hex(seed)}"
