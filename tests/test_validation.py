from __future__ import annotations

from datetime import datetime

import pytest

from eventcanon.errors import PermanentExtractionError
from eventcanon.models import CandidateEvent, VenueHint
from eventcanon.validation import is_junk_title, validate_candidate


@pytest.mark.parametrize(
    "title", ["", "   ", "TBA", "Untitled", "---", "2026", "Header row", None, "(Sold Out)", "[Premiere]", " (New date) "],
)
def test_junk_titles(title):
    assert is_junk_title(title) is True


@pytest.mark.parametrize("title", ["Weekly Trivia", "Hamlet", "1984 (film)", "Eventide Choir"])
def test_real_titles(title):
    assert is_junk_title(title) is False


def _candidate(**kw) -> CandidateEvent:
    base = dict(
        source_id="s",
        title="Weekly Trivia",
        venue_hint=VenueHint(name="Pub Quiz Bar"),
        raw_date_string="Tuesdays 19:00",
    )
    base.update(kw)
    return CandidateEvent(**base)


def test_valid_candidate_passes():
    validate_candidate(_candidate())
    validate_candidate(_candidate(raw_date_string=None, start_at=datetime(2026, 3, 1)))
    validate_candidate(_candidate(raw_date_string=None, recurrence_rule={"frequency": "weekly"}))
    validate_candidate(_candidate(raw_date_string=None, occurrence_type_hint="unknown"))
    validate_candidate(_candidate(venue_hint=VenueHint(latitude=50.0, longitude=19.9)))


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"title": "TBA"}, "missing_title"),
        ({"title": "(Sold Out)"}, "missing_title"),
        ({"venue_hint": None}, "missing_venue"),
        ({"venue_hint": VenueHint(city="Kraków")}, "missing_venue"),
        ({"raw_date_string": "   "}, "missing_date"),
    ],
)
def test_missing_required_fields_are_permanent(overrides, reason):
    with pytest.raises(PermanentExtractionError) as exc:
        validate_candidate(_candidate(**overrides))
    assert exc.value.reason == reason


def test_unknown_occurrence_type_hint_is_dropped():
    assert _candidate(occurrence_type_hint="festival").occurrence_type_hint is None
    assert _candidate(occurrence_type_hint=" Movie ").occurrence_type_hint == "movie"
