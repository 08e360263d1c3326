# eventcanon/canonicalize/freshness.py
"""
Freshness: admission control in front of consolidation.

Three ordered layers, first hit wins (hit = skip the candidate):

  1. direct     event_sources row for (source_id, external_id) was last seen
                inside the window
  2. indirect   that row's canonical event was updated inside the window
                (covers listings whose occurrence was consolidated elsewhere)
  3. predicted  no event_sources row yet, but a non-isolated event at the
                same venue with a similar title was updated inside the window.
                With predicted_requires_known_date the event must also already
                hold what this candidate would add (its (date, time), or be a
                pattern), so a new date of a busy listing still gets through.

The predictor only reads. A skip writes nothing, not even last_seen_at, so a
listing that keeps appearing is re-processed once per window.

Window: sources.freshness_window_hours, else the per-source config override,
else the global default (168 h).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from supabase import Client

from ..config import EngineConfig
from ..dates import parse_timestamp
from ..db.retry import execute_with_retry
from ..models import CandidateEvent, Source
from ..occurrences import OccurrenceEntry, PatternOccurrences, parse_occurrences
from .matching import normalize_title, similarity
from .venues import VenueDeduplicator

logger = logging.getLogger(__name__)

LAYER_DIRECT = "direct"
LAYER_INDIRECT = "indirect"
LAYER_PREDICTED = "predicted"

IN_QUERY_CHUNK = 200


@dataclass(frozen=True)
class FreshnessVerdict:
    fresh: bool
    layer: Optional[str] = None
    event_id: Optional[str] = None
    window_hours: Optional[int] = None

    @property
    def skip_reason(self) -> Optional[str]:
        return f"fresh:{self.layer}" if self.fresh else None


class FreshnessPredictor:
    def __init__(self, supabase: Client, config: EngineConfig, venues: VenueDeduplicator) -> None:
        self.supabase = supabase
        self.config = config
        self.venues = venues

    def window_hours(self, source: Source) -> int:
        return self.config.window_hours_for(source.source_id, source.freshness_window_hours)

    def _cutoff(self, source: Source, now_utc: datetime) -> datetime:
        return now_utc - timedelta(hours=self.window_hours(source))

    def check(
        self,
        candidate: CandidateEvent,
        external_id: str,
        source: Source,
        now_utc: datetime,
        *,
        entry: Optional[OccurrenceEntry] = None,
    ) -> FreshnessVerdict:
        window = self.window_hours(source)
        if self.config.bypass_recurring and candidate.recurrence_rule:
            return FreshnessVerdict(fresh=False, window_hours=window)

        cutoff = self._cutoff(source, now_utc)

        links = (
            execute_with_retry(
                self.supabase.table("event_sources")
                .select("event_id,last_seen_at")
                .eq("source_id", source.source_id)
                .eq("external_id", external_id)
                .limit(1)
            ).data
            or []
        )

        if links:
            link = links[0]
            last_seen = parse_timestamp(link.get("last_seen_at"))
            event_id = str(link["event_id"])
            if last_seen is not None and last_seen >= cutoff:
                return self._hit(LAYER_DIRECT, event_id, window, source, external_id)

            events = (
                execute_with_retry(
                    self.supabase.table("events")
                    .select("id,updated_at")
                    .eq("id", event_id)
                    .limit(1)
                ).data
                or []
            )
            updated_at = parse_timestamp(events[0].get("updated_at")) if events else None
            if updated_at is not None and updated_at >= cutoff:
                return self._hit(LAYER_INDIRECT, event_id, window, source, external_id)
            return FreshnessVerdict(fresh=False, window_hours=window)

        if not source.aggregate_on_index:
            # Isolated sources never share events, so a similar title proves nothing.
            return FreshnessVerdict(fresh=False, window_hours=window)

        event_id = self._predicted_event(candidate, entry, cutoff)
        if event_id is not None:
            return self._hit(LAYER_PREDICTED, event_id, window, source, external_id)
        return FreshnessVerdict(fresh=False, window_hours=window)

    def _predicted_event(
        self,
        candidate: CandidateEvent,
        entry: Optional[OccurrenceEntry],
        cutoff: datetime,
    ) -> Optional[str]:
        norm = normalize_title(candidate.title)
        if not norm:
            return None
        venue = self.venues.find_existing(candidate.venue_hint)
        if venue is None:
            return None

        rows = (
            execute_with_retry(
                self.supabase.table("events")
                .select("id,normalized_title,occurrences,updated_at")
                .eq("venue_id", venue.id)
                .eq("isolated", False)
                .gte("updated_at", cutoff.isoformat())
                .limit(200)
            ).data
            or []
        )

        threshold = self.config.similarity_threshold
        strict = self.config.predicted_requires_known_date
        for r in rows:
            if similarity(norm, r.get("normalized_title") or "") < threshold:
                continue
            if not strict or _already_holds(r.get("occurrences"), entry):
                return str(r["id"])
        return None

    def _hit(
        self,
        layer: str,
        event_id: str,
        window: int,
        source: Source,
        external_id: str,
    ) -> FreshnessVerdict:
        logger.info(
            "[freshness] SKIP layer=%s source=%s ext=%s event=%s window_h=%d",
            layer, source.source_id, external_id, event_id, window,
        )
        return FreshnessVerdict(fresh=True, layer=layer, event_id=event_id, window_hours=window)

    # ------------------------------------------------------------------
    # Batch layer 1
    # ------------------------------------------------------------------

    def filter_candidates(
        self,
        pairs: Sequence[tuple[CandidateEvent, str]],
        source: Source,
        now_utc: datetime,
    ) -> tuple[list[tuple[CandidateEvent, str]], list[tuple[CandidateEvent, str]]]:
        """
        Split (candidate, external_id) pairs into (proceed, skipped) with one
        `in_` query per chunk instead of one query per candidate.
        Only the direct layer is evaluated here; survivors still go through
        check() for the other layers.
        """
        cutoff = self._cutoff(source, now_utc)
        ext_ids = sorted({ext for _, ext in pairs})

        fresh_ids: set[str] = set()
        for i in range(0, len(ext_ids), IN_QUERY_CHUNK):
            chunk = ext_ids[i:i + IN_QUERY_CHUNK]
            rows = (
                execute_with_retry(
                    self.supabase.table("event_sources")
                    .select("external_id,last_seen_at")
                    .eq("source_id", source.source_id)
                    .in_("external_id", chunk)
                ).data
                or []
            )
            for r in rows:
                last_seen = parse_timestamp(r.get("last_seen_at"))
                if last_seen is not None and last_seen >= cutoff:
                    fresh_ids.add(str(r["external_id"]))

        proceed: list[tuple[CandidateEvent, str]] = []
        skipped: list[tuple[CandidateEvent, str]] = []
        for cand, ext in pairs:
            if ext in fresh_ids and not (self.config.bypass_recurring and cand.recurrence_rule):
                skipped.append((cand, ext))
            else:
                proceed.append((cand, ext))

        if skipped:
            logger.info(
                "[freshness] batch source=%s skipped=%d proceed=%d",
                source.source_id, len(skipped), len(proceed),
            )
        return proceed, skipped


def _already_holds(raw_occurrences, entry: Optional[OccurrenceEntry]) -> bool:
    """
    Would consolidating this candidate change nothing? Pattern events and
    dateless candidates add nothing; otherwise the (date, time) must exist.
    """
    if entry is None:
        return True
    try:
        occ = parse_occurrences(raw_occurrences)
    except ValueError:
        return False
    if isinstance(occ, PatternOccurrences):
        return True
    return any(e.key == entry.key for e in getattr(occ, "dates", None) or [])
