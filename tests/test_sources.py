from __future__ import annotations

import pytest

from eventcanon.db.sources import load_enabled_sources, load_source, source_from_row
from eventcanon.errors import EngineError


def test_row_coercion_defaults():
    s = source_from_row({
        "source_id": " inquizition ",
        "aggregate_on_index": None,
        "identity_policy": "VENUE_ONLY",
        "freshness_window_hours": "abc",
    })
    assert s.source_id == "inquizition"
    assert s.aggregate_on_index is True
    assert s.identity_policy == "venue_only"
    assert s.freshness_window_hours is None
    assert s.is_enabled is True


def test_non_positive_window_means_default():
    assert source_from_row({"source_id": "x", "freshness_window_hours": 0}).freshness_window_hours is None
    assert source_from_row({"source_id": "x", "freshness_window_hours": "24"}).freshness_window_hours == 24


def test_load_source(fake_db):
    fake_db.seed("sources", {
        "source_id": "kino-krakow", "name": "Kino", "aggregate_on_index": False,
        "identity_policy": "date_embedded", "freshness_window_hours": 24, "is_enabled": True,
    })
    s = load_source(fake_db, "kino-krakow")
    assert s.aggregate_on_index is False
    assert s.freshness_window_hours == 24


def test_unknown_source_raises(fake_db):
    with pytest.raises(EngineError, match="Unknown source"):
        load_source(fake_db, "nope")


def test_only_enabled_sources_sorted(fake_db):
    fake_db.seed(
        "sources",
        {"source_id": "b", "is_enabled": True},
        {"source_id": "a", "is_enabled": True},
        {"source_id": "c", "is_enabled": False},
    )
    assert [s.source_id for s in load_enabled_sources(fake_db)] == ["a", "b"]
