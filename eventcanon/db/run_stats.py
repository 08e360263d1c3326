# eventcanon/db/run_stats.py
"""
Persist one row per ingestion run in public.ingest_run_stats.
Pure observability: must never affect consolidation behavior.

Skips and failures are separate columns. A run that skips everything because
the listings were seen yesterday is healthy; a run that fails everything is
not.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from supabase import Client

from .retry import execute_with_retry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IngestRunCounters:
    candidates_seen: int = 0
    created: int = 0
    consolidated: int = 0
    isolated_created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    retries: int = 0
    signals_written: int = 0

    def record_decision(self, decision: str) -> None:
        if decision == "created":
            self.created += 1
        elif decision == "consolidated":
            self.consolidated += 1
        elif decision == "isolated_created":
            self.isolated_created += 1
        elif decision == "updated":
            self.updated += 1


def create_ingest_run(supabase: Client, *, source_id: str, mode: str) -> str:
    """Insert a new ingest_run_stats row and return its id."""
    res = execute_with_retry(
        supabase.table("ingest_run_stats").insert({
            "started_at": _utc_now().isoformat(),
            "source_id": source_id,
            "mode": mode,
        })
    )
    return str(res.data[0]["id"])


def finish_ingest_run(
    supabase: Client,
    run_id: str,
    counters: IngestRunCounters,
    *,
    skip_reasons: dict[str, int] | None = None,
    fail_reasons: dict[str, int] | None = None,
    similarity_min: float | None = None,
    similarity_avg: float | None = None,
    similarity_max: float | None = None,
    similarity_histogram: dict[str, int] | None = None,
    duration_ms: int | None = None,
) -> None:
    """Update the ingest_run_stats row with final counters and timestamp."""
    payload: dict[str, Any] = {
        "finished_at": _utc_now().isoformat(),
        "candidates_seen": counters.candidates_seen,
        "created": counters.created,
        "consolidated": counters.consolidated,
        "isolated_created": counters.isolated_created,
        "updated": counters.updated,
        "skipped": counters.skipped,
        "failed": counters.failed,
        "retries": counters.retries,
        "signals_written": counters.signals_written,
    }
    if skip_reasons is not None:
        payload["skip_reasons"] = skip_reasons
    if fail_reasons is not None:
        payload["fail_reasons"] = fail_reasons
    if similarity_min is not None:
        payload["similarity_min"] = similarity_min
    if similarity_avg is not None:
        payload["similarity_avg"] = similarity_avg
    if similarity_max is not None:
        payload["similarity_max"] = similarity_max
    if similarity_histogram is not None:
        payload["similarity_histogram"] = similarity_histogram
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms

    execute_with_retry(
        supabase.table("ingest_run_stats").update(payload).eq("id", run_id)
    )
