"""
EventConsolidator against the in-memory store.

Verifies:
  1. Create path, link row and its metadata
  2. Threshold: similar titles at one venue consolidate, distinct ones do not
  3. Non-aggregatable sources never fuzzy-merge
  4. Idempotence: the same candidate twice changes nothing
  5. Unknown dates keep the raw string and first-seen time
  6. No lost append under a concurrent writer (optimistic row lock)
  7. Concurrent create of the same event collapses onto one row
  8. Data-quality signals: external id collision and near miss
  9. Cancellation only for single-occurrence events
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from eventcanon.canonicalize.consolidator import EventConsolidator
from eventcanon.canonicalize.external_identity import derive_external_id
from eventcanon.canonicalize.performers import PerformerDeduplicator
from eventcanon.canonicalize.venues import VenueDeduplicator
from eventcanon.dates import ResolvedStart
from eventcanon.db.similarity_telemetry import SimilarityTelemetry
from eventcanon.errors import TransientError
from eventcanon.models import CandidateEvent, Source, VenueHint

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
HINT = VenueHint(name="V1", latitude=50.0614, longitude=19.9372, city="Kraków")
DATED = Source(source_id="S", identity_policy="date_embedded")


def _candidate(title="Weekly Trivia", day=15, **kw) -> CandidateEvent:
    base = dict(source_id="S", title=title, venue_hint=HINT, start_at=datetime(2026, 3, day, 19, 0))
    base.update(kw)
    return CandidateEvent(**base)


def _run(fake_db, config, candidate, source=DATED, *, consolidator=None, start=None, performers=()):
    venue = VenueDeduplicator(fake_db, config).resolve(candidate.venue_hint)
    ext = derive_external_id(source, candidate, start)
    consolidator = consolidator or EventConsolidator(fake_db, config)
    return consolidator.consolidate(candidate, source, venue, list(performers), ext, NOW, start=start)


def _events(fake_db):
    return fake_db.rows("events")


# ---------------------------------------------------------------------------
# 1. Create
# ---------------------------------------------------------------------------
def test_create_writes_event_and_link(fake_db, config):
    res = _run(fake_db, config, _candidate(label="pub edition"))

    assert res.decision == "created"
    assert res.occurrence_added is True
    [event] = _events(fake_db)
    assert event["id"] == res.event_id
    assert event["normalized_title"] == "weekly trivia"
    assert event["isolated"] is False
    assert event["occurrences"] == {
        "type": "explicit",
        "dates": [{"date": "2026-03-15", "time": "19:00", "label": "pub edition", "external_id": "S_v1_2026-03-15"}],
    }
    assert event["starts_at"].startswith("2026-03-15T19:00:00")

    [link] = fake_db.rows("event_sources")
    assert (link["source_id"], link["external_id"], link["event_id"]) == ("S", "S_v1_2026-03-15", res.event_id)
    assert link["metadata"]["occurrence_type"] == "explicit"
    assert link["last_seen_at"] == NOW.isoformat()


def test_listed_type_hint_is_kept_in_link_metadata(fake_db, config):
    _run(fake_db, config, _candidate(title="Dune: Part Two", occurrence_type_hint="movie"))
    assert _events(fake_db)[0]["occurrences"]["type"] == "movie"
    assert fake_db.rows("event_sources")[0]["metadata"]["occurrence_type"] == "movie"


def test_performers_are_linked_once(fake_db, config):
    ids = PerformerDeduplicator(fake_db).resolve_many(["Quizmaster Ola", "The Hosts"])
    _run(fake_db, config, _candidate(), performers=ids)
    _run(fake_db, config, _candidate(), performers=ids)
    assert len(fake_db.rows("event_performers")) == 2


# ---------------------------------------------------------------------------
# 2. Threshold
# ---------------------------------------------------------------------------
def test_similar_titles_consolidate_into_one_event(fake_db, config):
    first = _run(fake_db, config, _candidate("Weekly Trivia", day=15))
    second = _run(fake_db, config, _candidate("Weekly Trivia Night", day=22))

    assert second.decision == "consolidated"
    assert second.event_id == first.event_id
    assert second.similarity >= 0.85
    [event] = _events(fake_db)
    assert [d["date"] for d in event["occurrences"]["dates"]] == ["2026-03-15", "2026-03-22"]
    assert len(fake_db.rows("event_sources")) == 2


def test_dissimilar_titles_stay_separate(fake_db, config):
    a = _run(fake_db, config, _candidate("Weekly Trivia", day=15))
    b = _run(fake_db, config, _candidate("Stand-up Comedy Special", day=15))
    assert b.decision == "created"
    assert a.event_id != b.event_id
    assert len(_events(fake_db)) == 2


def test_same_title_at_another_venue_is_not_merged(fake_db, config):
    _run(fake_db, config, _candidate())
    other = VenueHint(name="Other Pub", latitude=50.07, longitude=19.94, city="Kraków")
    res = _run(fake_db, config, _candidate(venue_hint=other))
    assert res.decision == "created"
    assert len(_events(fake_db)) == 2


def test_starts_at_tracks_earliest_occurrence(fake_db, config):
    _run(fake_db, config, _candidate(day=22))
    _run(fake_db, config, _candidate(day=15))
    [event] = _events(fake_db)
    assert event["starts_at"].startswith("2026-03-15")


# ---------------------------------------------------------------------------
# 3. Non-aggregatable
# ---------------------------------------------------------------------------
def test_non_aggregatable_never_consolidates(fake_db, config):
    museum = Source(source_id="museum", aggregate_on_index=False, identity_policy="date_embedded")

    a = _run(fake_db, config, _candidate("Impressionists", day=1), museum)
    b = _run(fake_db, config, _candidate("Impressionists", day=2), museum)

    assert a.decision == b.decision == "isolated_created"
    assert a.event_id != b.event_id
    assert all(e["isolated"] for e in _events(fake_db))

    # an aggregatable source never fuzzy-matches an isolated event
    c = _run(fake_db, config, _candidate("Impressionists", day=3))
    assert c.decision == "created"
    assert len(_events(fake_db)) == 3


def test_non_aggregatable_updates_in_place_on_exact_link(fake_db, config):
    museum = Source(source_id="museum", aggregate_on_index=False, identity_policy="venue_only")
    a = _run(fake_db, config, _candidate("Impressionists", day=1), museum)
    b = _run(fake_db, config, _candidate("Impressionists", day=8), museum)

    assert b.decision == "updated"
    assert b.event_id == a.event_id
    assert len(_events(fake_db)[0]["occurrences"]["dates"]) == 2


# ---------------------------------------------------------------------------
# 4. Idempotence
# ---------------------------------------------------------------------------
def test_reprocessing_identical_candidates_is_idempotent(fake_db, config):
    batch = [_candidate("Weekly Trivia", day=15), _candidate("Weekly Trivia Night", day=22), _candidate("Bingo", day=15)]
    for cand in batch:
        _run(fake_db, config, cand)
    snapshot = (
        sorted((e["id"], str(e["occurrences"])) for e in _events(fake_db)),
        sorted((l["external_id"], l["event_id"]) for l in fake_db.rows("event_sources")),
    )

    results = [_run(fake_db, config, cand) for cand in batch]

    assert all(r.decision == "updated" and not r.occurrence_added for r in results)
    assert (
        sorted((e["id"], str(e["occurrences"])) for e in _events(fake_db)),
        sorted((l["external_id"], l["event_id"]) for l in fake_db.rows("event_sources")),
    ) == snapshot
    assert fake_db.rows("event_sources")[0]["metadata"]["skip_reason"] == "occurrence_already_present"


# ---------------------------------------------------------------------------
# 5. Unknown dates
# ---------------------------------------------------------------------------
def test_unparseable_date_creates_unknown_occurrence(fake_db, config):
    cand = _candidate(start_at=None, raw_date_string="sometime in spring")
    res = _run(fake_db, config, cand, start=ResolvedStart(start_at=None, has_time=False))

    assert res.decision == "created"
    [event] = _events(fake_db)
    assert event["occurrences"]["type"] == "unknown"
    assert event["occurrences"]["original_date_string"] == "sometime in spring"
    assert event["occurrences"]["first_seen_at"].startswith("2026-03-10T12:00:00")
    assert event["metadata"]["original_date_string"] == "sometime in spring"
    assert event["starts_at"] == NOW.isoformat()


def test_unknown_event_promoted_when_a_date_arrives(fake_db, config):
    _run(
        fake_db, config, _candidate(start_at=None, raw_date_string="??"),
        start=ResolvedStart(start_at=None, has_time=False),
    )
    res = _run(fake_db, config, _candidate(day=20))

    assert res.decision == "consolidated"
    [event] = _events(fake_db)
    assert event["occurrences"]["type"] == "explicit"
    assert event["starts_at"].startswith("2026-03-20")
    assert event["metadata"]["original_date_string"] == "??"


def test_pattern_event_ignores_dates(fake_db, config):
    rule = {"frequency": "weekly", "days_of_week": ["tuesday"], "time": "19:00"}
    venue_only = Source(source_id="S", identity_policy="venue_only")
    _run(fake_db, config, _candidate(recurrence_rule=rule), venue_only)
    res = _run(fake_db, config, _candidate(day=17, recurrence_rule=rule), venue_only)

    assert res.occurrence_added is False
    [event] = _events(fake_db)
    assert "dates" not in event["occurrences"]
    assert fake_db.rows("event_sources")[0]["metadata"]["skip_reason"] == "pattern_rule_authoritative"


# ---------------------------------------------------------------------------
# 6. Optimistic row lock
# ---------------------------------------------------------------------------
def test_concurrent_append_is_not_lost(fake_db, config):
    _run(fake_db, config, _candidate(day=15))

    def other_writer(q):
        if q.table_name == "events" and q.op == "update":
            fake_db.before_execute.clear()
            row = fake_db.tables["events"][0]
            row["occurrences"]["dates"].append({"date": "2026-03-29", "time": "19:00"})
            row["lock_version"] += 1

    fake_db.before_execute.append(other_writer)
    res = _run(fake_db, config, _candidate(day=22))

    assert res.decision == "updated" or res.decision == "consolidated"
    [event] = _events(fake_db)
    assert [d["date"] for d in event["occurrences"]["dates"]] == ["2026-03-15", "2026-03-22", "2026-03-29"]
    assert event["lock_version"] == 2


def test_endless_lock_contention_is_transient(fake_db, config):
    _run(fake_db, config, _candidate(day=15))

    def always_bump(q):
        if q.table_name == "events" and q.op == "update":
            fake_db.tables["events"][0]["lock_version"] += 1

    fake_db.before_execute.append(always_bump)
    with pytest.raises(TransientError):
        _run(fake_db, config, _candidate(day=22))


# ---------------------------------------------------------------------------
# 7. Concurrent create
# ---------------------------------------------------------------------------
def test_concurrent_create_collapses_onto_winner(fake_db, config):
    rival = EventConsolidator(fake_db, config)
    rival_candidate = _candidate(day=15)

    def rival_creates_first(q):
        if q.table_name == "events" and q.op == "insert":
            fake_db.before_execute.clear()
            _run(fake_db, config, rival_candidate, consolidator=rival)

    fake_db.before_execute.append(rival_creates_first)
    res = _run(fake_db, config, _candidate(day=22))

    assert res.decision == "consolidated"
    [event] = _events(fake_db)
    assert event["id"] == res.event_id
    assert [d["date"] for d in event["occurrences"]["dates"]] == ["2026-03-15", "2026-03-22"]


# ---------------------------------------------------------------------------
# 8. Signals
# ---------------------------------------------------------------------------
def test_venue_only_collision_keeps_titles_apart_and_signals(fake_db, config):
    venue_only = Source(source_id="S", identity_policy="venue_only")
    quiz = _run(fake_db, config, _candidate("Weekly Trivia"), venue_only)
    special = _run(fake_db, config, _candidate("Halloween Costume Party", day=31), venue_only)

    assert special.decision == "created"
    assert special.event_id != quiz.event_id
    assert special.signals_written == 1

    [signal] = fake_db.rows("consolidation_signals")
    assert signal["signal_type"] == "external_id_collision"
    assert signal["status"] == "open"
    assert signal["event_id"] == quiz.event_id

    # the shared link row now points at the listing processed last
    [link] = fake_db.rows("event_sources")
    assert link["external_id"] == "S_v1"
    assert link["event_id"] == special.event_id


def test_near_miss_is_signalled_once(fake_db, config):
    strict = replace(config, similarity_threshold=0.95)
    _run(fake_db, strict, _candidate("Weekly Trivia", day=15))

    res = _run(fake_db, strict, _candidate("Weekly Trivia Night", day=22))
    assert res.decision == "created"
    assert res.signals_written == 1

    again = _run(fake_db, strict, _candidate("Weekly Trivia Night", day=22))
    assert again.signals_written == 0

    [signal] = fake_db.rows("consolidation_signals")
    assert signal["signal_type"] == "near_miss"
    assert 0.90 <= signal["details"]["similarity"] < 0.95


def test_best_scores_feed_telemetry(fake_db, config):
    telemetry = SimilarityTelemetry()
    consolidator = EventConsolidator(fake_db, config, telemetry=telemetry)
    _run(fake_db, config, _candidate("Weekly Trivia", day=15), consolidator=consolidator)
    _run(fake_db, config, _candidate("Weekly Trivia Night", day=22), consolidator=consolidator)

    # the first candidate had nothing to compare against
    assert telemetry.stats.count == 1
    assert telemetry.hist["85_95"] == 1


# ---------------------------------------------------------------------------
# 9. Cancellation
# ---------------------------------------------------------------------------
def test_cancellation_of_sole_occurrence_cancels_event(fake_db, config):
    _run(fake_db, config, _candidate(day=15))
    _run(fake_db, config, _candidate(day=15, cancellation_reason="host ill"))

    [event] = _events(fake_db)
    assert event["status"] == "cancelled"
    assert event["metadata"]["cancellation_reason"] == "host ill"
    assert fake_db.rows("event_sources")[0]["metadata"]["cancellation_reason"] == "host ill"


def test_cancelling_one_date_of_a_run_keeps_event_active(fake_db, config):
    _run(fake_db, config, _candidate(day=15))
    _run(fake_db, config, _candidate(day=22))
    _run(fake_db, config, _candidate(day=22, cancellation_reason="sold out venue closed"))

    [event] = _events(fake_db)
    assert event["status"] == "active"
    assert len(event["occurrences"]["dates"]) == 2
