from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo

import dateparser
from pydantic import TypeAdapter

from .canonicalize.matching import has_time_hint
from .models import CandidateEvent
from .occurrences import OccurrenceEntry


@dataclass(frozen=True)
class ResolvedStart:
    start_at: Optional[datetime]
    has_time: bool

    @property
    def parsed(self) -> bool:
        return self.start_at is not None


def parse_raw_date(
    text: Optional[str],
    *,
    timezone: str = "UTC",
    languages: Sequence[str] | None = None,
) -> Optional[datetime]:
    """
    Lenient parser for upstream date strings:
      - '24.01.2026'
      - 'Sat, 24 Jan 2026, 19:30'
      - 'wtorek 3 marca 2026 20:00'
    Returns a timezone-aware datetime, or None when nothing sensible parses.
    """
    s = (text or "").strip()
    if not s:
        return None

    return dateparser.parse(
        s,
        languages=list(languages) if languages else None,
        settings={
            "TIMEZONE": timezone,
            "RETURN_AS_TIMEZONE_AWARE": True,
            "PREFER_DATES_FROM": "future",
            "DATE_ORDER": "DMY",
            "STRICT_PARSING": False,
        },
    )


def resolve_start(
    candidate: CandidateEvent,
    *,
    timezone: str = "UTC",
    languages: Sequence[str] | None = None,
) -> ResolvedStart:
    """
    start_at wins when the extraction stage already parsed it; otherwise try
    the raw string. Time is only trusted when the raw string mentions one,
    so date-only listings do not invent midnight.
    """
    if candidate.start_at is not None:
        dt = candidate.start_at
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=ZoneInfo(timezone))
        return ResolvedStart(start_at=dt, has_time=True)

    dt = parse_raw_date(candidate.raw_date_string, timezone=timezone, languages=languages)
    if dt is None:
        return ResolvedStart(start_at=None, has_time=False)
    return ResolvedStart(start_at=dt, has_time=has_time_hint(candidate.raw_date_string))


def build_entry(
    candidate: CandidateEvent,
    start: ResolvedStart,
    external_id: Optional[str],
) -> Optional[OccurrenceEntry]:
    if start.start_at is None:
        return None
    return OccurrenceEntry(
        date=start.start_at.date().isoformat(),
        time=start.start_at.strftime("%H:%M") if start.has_time else None,
        label=candidate.label,
        external_id=external_id,
    )


_TIMESTAMP = TypeAdapter(datetime)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """timestamptz column value -> aware datetime (naive values are taken as UTC)."""
    if value is None or value == "":
        return None
    dt = _TIMESTAMP.validate_python(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=dt_timezone.utc)
    return dt
