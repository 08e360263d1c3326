from __future__ import annotations

from eventcanon.canonicalize.performers import PerformerDeduplicator


def test_normalized_name_lookup_or_create(fake_db):
    dedup = PerformerDeduplicator(fake_db)
    a = dedup.resolve("Beyoncé")
    b = dedup.resolve("  BEYONCE ")
    assert a.id == b.id
    assert a.normalized_name == "beyonce"
    assert len(fake_db.rows("performers")) == 1


def test_blank_names_are_ignored(fake_db):
    dedup = PerformerDeduplicator(fake_db)
    assert dedup.resolve("") is None
    assert dedup.resolve(None) is None
    assert dedup.resolve(" !! ") is None
    assert fake_db.rows("performers") == []


def test_resolve_many_collapses_duplicates_and_keeps_order(fake_db):
    dedup = PerformerDeduplicator(fake_db)
    ids = dedup.resolve_many(["Quizmaster Ola", "", "The Hosts", "quizmaster ola", None])
    assert len(ids) == 2
    names = {r["id"]: r["name"] for r in fake_db.rows("performers")}
    assert [names[i] for i in ids] == ["Quizmaster Ola", "The Hosts"]


def test_insert_race_returns_winner(fake_db):
    dedup = PerformerDeduplicator(fake_db)

    def concurrent_insert(q):
        if q.table_name == "performers" and q.op == "insert":
            fake_db.before_execute.clear()
            fake_db.seed("performers", {"name": "DJ Krush", "normalized_name": "dj krush"})

    fake_db.before_execute.append(concurrent_insert)
    performer = dedup.resolve("DJ Krush")

    rows = fake_db.rows("performers")
    assert len(rows) == 1
    assert performer.id == rows[0]["id"]
