# eventcanon/canonicalize/matching.py
"""
Pure normalization / similarity helpers for canonicalization.
No DB access.
"""
from __future__ import annotations

import math
import re
import unicodedata
from typing import Optional

from geopy.distance import geodesic
from rapidfuzz.distance import JaroWinkler

METERS_PER_DEGREE_LAT = 111_320.0

# Letters NFKD does not decompose
_TRANSLITERATE = str.maketrans({
    "ł": "l", "Ł": "L",
    "ø": "o", "Ø": "O",
    "đ": "d", "Đ": "D",
    "ß": "ss",
    "æ": "ae", "Æ": "AE",
    "œ": "oe", "Œ": "OE",
})

# Trailing marketing tags, e.g. "Weekly Trivia | SOLD OUT", "Gig - Tickets on sale"
_PROMO_RE = re.compile(
    r"^(?:"
    r"sold\s*out|few\s+tickets(?:\s+left)?|last\s+tickets|tickets?(?:\s+on\s+sale|\s+available)?"
    r"|on\s+sale(?:\s+now)?|buy\s+tickets|book\s+now|presale|pre-sale|early\s+bird"
    r"|free(?:\s+entry|\s+admission)?|new\s+date|rescheduled|postponed|premiere|special\s+offer"
    r"|limited(?:\s+seats)?|\d{2}\+|all\s+ages|registration\s+open"
    r"|wyprzedane|bilety|nowy\s+termin|premiera|wstęp\s+wolny|ausverkauft|neuer\s+termin"
    r")[!.]*$",
    re.IGNORECASE,
)
_SEPARATOR_RE = re.compile(r"\s+(?:\||-|–|—|::|//|•|·)\s+")
_TRAILING_BRACKET_RE = re.compile(r"\s*[\(\[]([^\)\]]*)[\)\]]\s*$")

_LEGAL_SUFFIX_RE = re.compile(
    r"(?:\s+(?:ltd|llc|inc|gmbh|ag|sa|plc|limited|srl|bv|co|sp z o o|spzoo))+$"
)

_TIME_HINT_RES = (
    re.compile(r"\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}"),
    re.compile(r"\b\d{1,2}:\d{2}\b"),
    re.compile(r"\b\d{1,2}\.\d{2}\s*(?:uhr|h)\b"),
    re.compile(r"\b\d{1,2}\s*(?:am|pm)\b"),
    re.compile(r"\b\d{1,2}h\d{0,2}\b"),
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def strip_diacritics(s: str) -> str:
    s = s.translate(_TRANSLITERATE)
    decomposed = unicodedata.normalize("NFKD", s)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def strip_marketing_suffix(title: Optional[str]) -> str:
    """Drop trailing separator-delimited or bracketed promotional tags."""
    s = (title or "").strip()
    while s:
        m = _TRAILING_BRACKET_RE.search(s)
        if m and _PROMO_RE.match(m.group(1).strip()):
            s = s[: m.start()].strip()
            continue

        parts = _SEPARATOR_RE.split(s)
        if len(parts) > 1 and _PROMO_RE.match(parts[-1].strip()):
            # keep everything before the last separator
            last_sep = list(_SEPARATOR_RE.finditer(s))[-1]
            s = s[: last_sep.start()].strip()
            continue
        break
    return s


def _collapse(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def normalize_title(title: Optional[str]) -> str:
    """Strip promo tags and diacritics, lowercase, strip punctuation."""
    if not title:
        return ""
    s = strip_diacritics(strip_marketing_suffix(title)).lower()
    s = re.sub(r"[^\w\s]", "", s)
    return _collapse(s)


def normalize_name(name: Optional[str]) -> str:
    """Venue / performer names: like titles, plus legal suffixes removed."""
    if not name:
        return ""
    s = strip_diacritics(name).lower()
    s = _collapse(re.sub(r"[^\w\s]", " ", s))
    s = _LEGAL_SUFFIX_RE.sub("", s)
    return s.strip()


def city_key(city: Optional[str]) -> Optional[str]:
    if not city:
        return None
    s = strip_diacritics(city).lower()
    s = _collapse(re.sub(r"[^\w\s]", " ", s))
    return s or None


def slugify(s: Optional[str]) -> str:
    s = strip_diacritics(s or "").lower()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    return s.strip("-")


def has_time_hint(raw: Optional[str]) -> bool:
    """Does the raw date string look like it carries a time of day?"""
    if not raw:
        return False
    low = raw.strip().lower()
    return any(r.search(low) for r in _TIME_HINT_RES)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def similarity(norm_a: str, norm_b: str) -> float:
    """Jaro-Winkler on already-normalized strings. Returns 0.0–1.0."""
    if not norm_a or not norm_b:
        return 0.0
    return float(JaroWinkler.normalized_similarity(norm_a, norm_b))


# ---------------------------------------------------------------------------
# Geo
# ---------------------------------------------------------------------------

def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return float(geodesic((lat1, lng1), (lat2, lng2)).meters)


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing a circle of radius_m."""
    dlat = radius_m / METERS_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(lat)), 0.01)
    dlng = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)
    return (lat - dlat, lat + dlat, lng - dlng, lng + dlng)
