from __future__ import annotations

import argparse
import logging
import random
import sys
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from pydantic import ValidationError
from supabase import Client

from .canonicalize.consolidator import ConsolidationResult, EventConsolidator
from .canonicalize.external_identity import derive_external_id
from .canonicalize.freshness import FreshnessPredictor
from .canonicalize.performers import PerformerDeduplicator
from .canonicalize.venues import VenueDeduplicator
from .config import EngineConfig
from .dates import ResolvedStart, build_entry, resolve_start
from .db.retry import TRANSIENT_HTTP_ERRORS
from .db.run_stats import IngestRunCounters, create_ingest_run, finish_ingest_run
from .db.similarity_telemetry import SimilarityTelemetry
from .db.sources import load_enabled_sources, load_source
from .db.supabase_client import get_supabase_client
from .errors import PermanentExtractionError, RateLimitedError, TransientError
from .geocoding import ChainedCityLookup, CityCenterLookup, CityCenterResolver, NominatimCityGeocoder
from .models import CandidateEvent, Source
from .outcomes import Fail, Ok, Outcome, Skip
from .validation import validate_candidate

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientError, *TRANSIENT_HTTP_ERRORS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Prepared:
    candidate: CandidateEvent
    external_id: str
    start: ResolvedStart


class ConsolidationEngine:
    """
    validation -> external identity -> freshness -> venue/performers -> consolidation

    Transient errors propagate to the caller (run_with_retry); permanent
    extraction errors become Fail; freshness hits become Skip.
    """

    def __init__(
        self,
        supabase: Client,
        config: EngineConfig,
        *,
        city_lookup: Optional[CityCenterLookup] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.supabase = supabase
        self.config = config
        self.clock = clock
        self.telemetry = SimilarityTelemetry()
        self.venues = VenueDeduplicator(supabase, config, city_lookup=city_lookup)
        self.performers = PerformerDeduplicator(supabase)
        self.freshness = FreshnessPredictor(supabase, config, self.venues)
        self.consolidator = EventConsolidator(supabase, config, telemetry=self.telemetry)

    def prepare(self, candidate: CandidateEvent, source: Source) -> Prepared:
        """Raises PermanentExtractionError."""
        validate_candidate(candidate)
        start = resolve_start(
            candidate,
            timezone=self.config.timezone,
            languages=self.config.date_languages,
        )
        return Prepared(
            candidate=candidate,
            external_id=derive_external_id(source, candidate, start),
            start=start,
        )

    def process(self, candidate: CandidateEvent, source: Source, *, dry_run: bool = False) -> Outcome:
        try:
            prepared = self.prepare(candidate, source)
        except PermanentExtractionError as e:
            return Fail(e.reason)
        return self.process_prepared(prepared, source, dry_run=dry_run)

    def process_prepared(self, prepared: Prepared, source: Source, *, dry_run: bool = False) -> Outcome:
        candidate = prepared.candidate
        now_utc = self.clock()
        entry = build_entry(candidate, prepared.start, prepared.external_id)

        verdict = self.freshness.check(
            candidate, prepared.external_id, source, now_utc, entry=entry,
        )
        if verdict.fresh:
            return Skip(verdict.skip_reason or "fresh")

        if dry_run:
            return Ok({"external_id": prepared.external_id, "decision": "dry"})

        venue = self.venues.resolve(candidate.venue_hint, source_id=source.source_id)
        performer_ids = self.performers.resolve_many(candidate.performer_hints)
        result = self.consolidator.consolidate(
            candidate,
            source,
            venue,
            performer_ids,
            prepared.external_id,
            now_utc,
            start=prepared.start,
        )
        return Ok(result)


def run_with_retry(
    fn: Callable[[], Outcome],
    *,
    max_attempts: int,
    base_sleep: float,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> Outcome:
    """
    Transient / rate-limit / transport errors: exponential backoff with jitter,
    at most max_attempts tries, then Fail("retries_exhausted").
    PermanentExtractionError: Fail immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            outcome = fn()
        except PermanentExtractionError as e:
            return Fail(e.reason, attempts=attempt)
        except RETRYABLE_ERRORS as e:
            if attempt >= max_attempts:
                logger.warning("[ingest] giving up after %d attempts: %r", attempt, e)
                return Fail("retries_exhausted", attempts=attempt)

            delay = base_sleep * (2 ** (attempt - 1)) + random.uniform(0, base_sleep)
            if isinstance(e, RateLimitedError) and e.retry_after:
                delay = max(delay, float(e.retry_after))
            logger.info("[ingest] retry attempt=%d/%d sleep=%.2fs err=%r", attempt, max_attempts, delay, e)
            if on_retry is not None:
                on_retry(attempt, e)
            sleep(delay)
            continue

        if isinstance(outcome, Fail) and outcome.attempts != attempt:
            return Fail(outcome.reason, attempts=attempt)
        return outcome


@dataclass
class IngestReport:
    source_id: str
    mode: str
    counters: IngestRunCounters = field(default_factory=IngestRunCounters)
    skip_reasons: Counter = field(default_factory=Counter)
    fail_reasons: Counter = field(default_factory=Counter)
    duration_ms: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def ok(self) -> int:
        c = self.counters
        return c.candidates_seen - c.skipped - c.failed

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            self.counters.candidates_seen += 1
            if isinstance(outcome, Skip):
                self.counters.skipped += 1
                self.skip_reasons[outcome.reason] += 1
            elif isinstance(outcome, Fail):
                self.counters.failed += 1
                self.fail_reasons[outcome.reason] += 1
            elif isinstance(outcome.value, ConsolidationResult):
                self.counters.record_decision(outcome.value.decision)
                self.counters.signals_written += outcome.value.signals_written

    def note_retry(self, attempt: int, err: Exception) -> None:
        with self._lock:
            self.counters.retries += 1

    def summary_line(self) -> str:
        c = self.counters
        return (
            f"[ingest][summary]"
            f" source={self.source_id}"
            f" mode={self.mode}"
            f" seen={c.candidates_seen}"
            f" ok={self.ok}"
            f" created={c.created}"
            f" consolidated={c.consolidated}"
            f" updated={c.updated}"
            f" isolated_created={c.isolated_created}"
            f" skipped={c.skipped}"
            f" failed={c.failed}"
            f" retries={c.retries}"
            f" signals={c.signals_written}"
            f" duration_ms={self.duration_ms}"
        )


def ingest(
    engine: ConsolidationEngine,
    candidates: Sequence[CandidateEvent],
    source: Source,
    *,
    mode: str = "live",
    persist_run_stats: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> IngestReport:
    dry_run = mode != "live"
    config = engine.config
    report = IngestReport(source_id=source.source_id, mode=mode)
    t_start = time.monotonic()

    stats_run_id: Optional[str] = None
    if persist_run_stats and not dry_run:
        try:
            stats_run_id = create_ingest_run(engine.supabase, source_id=source.source_id, mode=mode)
        except Exception as e:
            print(f"[ingest] WARNING: failed to create ingest_run_stats row: {e!r}")

    try:
        # 1) validation + identity (cheap, sequential)
        prepared: list[Prepared] = []
        for cand in candidates:
            try:
                prepared.append(engine.prepare(cand, source))
            except PermanentExtractionError as e:
                logger.warning("[ingest] FAIL reason=%s title=%r", e.reason, cand.title)
                report.record(Fail(e.reason))

        # 2) batch direct-freshness gate
        by_key = {(id(p.candidate), p.external_id): p for p in prepared}
        proceed, skipped = engine.freshness.filter_candidates(
            [(p.candidate, p.external_id) for p in prepared], source, engine.clock(),
        )
        for _cand, _ext in skipped:
            report.record(Skip("fresh:direct"))

        # 3) per-candidate work on a bounded pool
        todo = [by_key[(id(c), ext)] for c, ext in proceed]
        workers = max(1, min(config.max_workers, len(todo) or 1))

        def _task(p: Prepared) -> Outcome:
            return run_with_retry(
                lambda: engine.process_prepared(p, source, dry_run=dry_run),
                max_attempts=config.max_attempts,
                base_sleep=config.retry_base_sleep,
                sleep=sleep,
                on_retry=report.note_retry,
            )

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(_task, p): p for p in todo}
            for fut in as_completed(futures):
                p = futures[fut]
                try:
                    outcome = fut.result()
                except Exception as e:
                    logger.error(
                        "[ingest] ERROR source=%s ext=%s: %r", source.source_id, p.external_id, e,
                    )
                    outcome = Fail(f"error:{type(e).__name__}")
                if isinstance(outcome, Fail):
                    logger.warning(
                        "[ingest] FAIL source=%s ext=%s reason=%s attempts=%d",
                        source.source_id, p.external_id, outcome.reason, outcome.attempts,
                    )
                report.record(outcome)

    finally:
        report.duration_ms = int((time.monotonic() - t_start) * 1000)
        if stats_run_id:
            stats = engine.telemetry.stats
            try:
                finish_ingest_run(
                    engine.supabase,
                    stats_run_id,
                    report.counters,
                    skip_reasons=dict(report.skip_reasons),
                    fail_reasons=dict(report.fail_reasons),
                    similarity_min=stats.min,
                    similarity_avg=stats.avg,
                    similarity_max=stats.max,
                    similarity_histogram=engine.telemetry.hist,
                    duration_ms=report.duration_ms,
                )
            except Exception as e:
                print(f"[ingest] WARNING: failed to finish ingest_run_stats row: {e!r}")

    return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def read_candidates(lines: Iterable[str], source_id: str) -> tuple[list[CandidateEvent], int]:
    """JSON lines -> candidates. Returns (candidates, invalid_line_count)."""
    out: list[CandidateEvent] = []
    invalid = 0
    for n, line in enumerate(lines, start=1):
        s = line.strip()
        if not s:
            continue
        try:
            cand = CandidateEvent.model_validate_json(s)
        except ValidationError as e:
            invalid += 1
            logger.warning("[ingest] invalid candidate line=%d: %s", n, e.errors()[:1])
            continue
        if cand.source_id != source_id:
            cand = cand.model_copy(update={"source_id": source_id})
        out.append(cand)
    return out, invalid


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Consolidate candidate events into the canonical catalog")
    parser.add_argument("--source", help="sources.source_id slug")
    parser.add_argument(
        "--list-sources",
        action="store_true",
        help="Print enabled sources with their identity policy and exit.",
    )
    parser.add_argument("--input", default="-", help="JSON lines file of candidates ('-' for stdin)")
    parser.add_argument(
        "--mode",
        choices=["dry", "live"],
        default="dry",
        help="dry: validation, identity and freshness only; live: perform writes",
    )
    parser.add_argument(
        "--geocode",
        action="store_true",
        help="Fall back to Nominatim for cities missing from public.cities.",
    )
    parser.add_argument("--no-run-stats", action="store_true")
    args = parser.parse_args(argv)
    if not args.source and not args.list_sources:
        parser.error("--source is required unless --list-sources is given")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    supabase = get_supabase_client()
    if args.list_sources:
        for s in load_enabled_sources(supabase):
            window = s.freshness_window_hours or "default"
            print(f"{s.source_id}\tpolicy={s.identity_policy} aggregate={s.aggregate_on_index} window={window}")
        return

    config = EngineConfig.from_env()
    source = load_source(supabase, args.source)
    if not source.is_enabled:
        print(f"[ingest] source={source.source_id} is disabled, nothing to do.")
        return

    if args.input == "-":
        candidates, invalid = read_candidates(sys.stdin, source.source_id)
    else:
        with open(args.input, "r", encoding="utf-8") as f:
            candidates, invalid = read_candidates(f, source.source_id)

    city_lookup: CityCenterLookup = CityCenterResolver(supabase)
    if args.geocode:
        city_lookup = ChainedCityLookup(city_lookup, NominatimCityGeocoder())

    engine = ConsolidationEngine(supabase, config, city_lookup=city_lookup)
    report = ingest(
        engine,
        candidates,
        source,
        mode=args.mode,
        persist_run_stats=not args.no_run_stats,
    )

    if invalid:
        print(f"[ingest] invalid_lines={invalid}")
    if report.skip_reasons:
        print(f"[ingest] skip_reasons={dict(report.skip_reasons)}")
    if report.fail_reasons:
        print(f"[ingest] fail_reasons={dict(report.fail_reasons)}")
    print(report.summary_line())


if __name__ == "__main__":
    main()
