from __future__ import annotations

from datetime import datetime, timezone

from eventcanon.dates import build_entry, parse_raw_date, parse_timestamp, resolve_start
from eventcanon.models import CandidateEvent, VenueHint


def _candidate(**kw) -> CandidateEvent:
    return CandidateEvent(source_id="s", title="Gig", venue_hint=VenueHint(name="Bar"), **kw)


def test_structured_start_wins_and_gets_timezone():
    start = resolve_start(_candidate(start_at=datetime(2026, 3, 15, 19, 0), raw_date_string="nonsense"))
    assert start.parsed
    assert start.has_time
    assert start.start_at.tzinfo is not None
    assert start.start_at.isoformat() == "2026-03-15T19:00:00+00:00"


def test_raw_date_is_day_first():
    dt = parse_raw_date("24.01.2026")
    assert dt is not None
    assert (dt.year, dt.month, dt.day) == (2026, 1, 24)


def test_date_only_string_produces_entry_without_time():
    cand = _candidate(raw_date_string="24.01.2026", label="premiere")
    start = resolve_start(cand)
    assert start.parsed and not start.has_time

    entry = build_entry(cand, start, "s_bar_2026-01-24")
    assert entry.date == "2026-01-24"
    assert entry.time is None
    assert entry.label == "premiere"
    assert entry.external_id == "s_bar_2026-01-24"


def test_raw_string_with_time_keeps_time():
    cand = _candidate(raw_date_string="24.01.2026 19:30")
    entry = build_entry(cand, resolve_start(cand), None)
    assert entry.date == "2026-01-24"
    assert entry.time == "19:30"


def test_nothing_parseable_yields_no_entry():
    cand = _candidate()
    start = resolve_start(cand)
    assert not start.parsed
    assert build_entry(cand, start, "x") is None


def test_parse_timestamp():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("2026-03-10T12:00:00Z") == datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
    naive = parse_timestamp("2026-03-10T12:00:00")
    assert naive.tzinfo is not None
