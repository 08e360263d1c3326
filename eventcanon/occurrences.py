"""
Occurrences column of public.events, as a tagged union.

=== JSON SHAPE ===

  {"type": "explicit",   "dates": [{"date", "time", "label", "external_id"}, ...]}
  {"type": "pattern",    "pattern": {"frequency", "days_of_week", "time", "timezone"}}
  {"type": "exhibition" | "movie" | "recurring", "dates": [...]}
  {"type": "unknown",    "first_seen_at": <iso>, "original_date_string": <str>}

Invariants enforced by the models:
  - dates lists hold at most one entry per (date, time), ordered by it
    (a stored document with duplicates collapses to the first entry)
  - pattern never carries a dates list (extra fields are rejected)
  - unknown never carries dates; it records when we first saw the listing
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter

LISTED_TYPES: tuple[str, ...] = ("exhibition", "movie", "recurring")
OCCURRENCE_TYPES: tuple[str, ...] = ("explicit", "pattern", *LISTED_TYPES, "unknown")


class RecurrenceRule(BaseModel):
    model_config = ConfigDict(extra="allow")

    frequency: str = "weekly"
    days_of_week: list[str] = Field(default_factory=list)
    time: Optional[str] = None
    timezone: Optional[str] = None


class OccurrenceEntry(BaseModel):
    date: str  # ISO date, e.g. "2026-03-15"
    time: Optional[str] = None  # "HH:MM", None when upstream gave no time
    label: Optional[str] = None
    external_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.date, self.time or "")


def _unique_sorted(entries: list[OccurrenceEntry]) -> list[OccurrenceEntry]:
    """First entry per (date, time) wins; result ordered by (date, time)."""
    seen: dict[tuple[str, str], OccurrenceEntry] = {}
    for e in entries:
        seen.setdefault(e.key, e)
    return sorted(seen.values(), key=lambda e: e.key)


EntryList = Annotated[list[OccurrenceEntry], AfterValidator(_unique_sorted)]


class ExplicitOccurrences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["explicit"] = "explicit"
    dates: EntryList = Field(default_factory=list)


class PatternOccurrences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["pattern"] = "pattern"
    pattern: RecurrenceRule


class ListedOccurrences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["exhibition", "movie", "recurring"]
    dates: EntryList = Field(default_factory=list)


class UnknownOccurrences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["unknown"] = "unknown"
    first_seen_at: datetime
    original_date_string: Optional[str] = None


Occurrences = Annotated[
    Union[ExplicitOccurrences, PatternOccurrences, ListedOccurrences, UnknownOccurrences],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(Occurrences)


def parse_occurrences(raw: Mapping[str, Any] | None) -> Occurrences:
    """Validate a stored occurrences document. Raises pydantic.ValidationError."""
    return _ADAPTER.validate_python(dict(raw or {}))


def dump_occurrences(occ: Occurrences) -> dict[str, Any]:
    return occ.model_dump(mode="json", exclude_none=True)


def initial_occurrences(
    *,
    entry: OccurrenceEntry | None,
    recurrence_rule: Mapping[str, Any] | None,
    type_hint: str | None,
    raw_date_string: str | None,
    now_utc: datetime,
) -> Occurrences:
    """
    Pick the variant for a brand-new canonical event.

    Priority:
      1. recurrence rule present       -> pattern
      2. no parseable date, or hint 'unknown' -> unknown
      3. hint exhibition/movie/recurring -> that variant with one entry
      4. default                        -> explicit with one entry
    """
    if recurrence_rule:
        return PatternOccurrences(pattern=RecurrenceRule.model_validate(dict(recurrence_rule)))

    if entry is None or type_hint == "unknown":
        return UnknownOccurrences(
            first_seen_at=now_utc,
            original_date_string=raw_date_string,
        )

    if type_hint in LISTED_TYPES:
        return ListedOccurrences(type=type_hint, dates=[entry])

    return ExplicitOccurrences(dates=[entry])


def add_entry(occ: Occurrences, entry: OccurrenceEntry | None) -> tuple[Occurrences, bool]:
    """
    Append *entry* unless an entry with the same (date, time) exists.

    Returns (occurrences, changed). Pattern events ignore entries because the
    rule is the source of truth. An unknown event that receives a dated entry
    becomes explicit.
    """
    if entry is None or isinstance(occ, PatternOccurrences):
        return occ, False

    if isinstance(occ, UnknownOccurrences):
        return ExplicitOccurrences(dates=[entry]), True

    if any(e.key == entry.key for e in occ.dates):
        return occ, False

    dates = sorted([*occ.dates, entry], key=lambda e: e.key)
    return occ.model_copy(update={"dates": dates}), True


def entry_count(occ: Occurrences) -> int:
    return len(getattr(occ, "dates", None) or [])
