# eventcanon/canonicalize/consolidator.py
"""
Match-or-create against canonical events.

Decisions:
  created           no similar event at the venue; new canonical row
  consolidated      merged into a similar event at the same venue
  updated           exact (source_id, external_id) link hit; updated in place
  isolated_created  non-aggregatable source; new canonical row that is never
                    a fuzzy-match target

Aggregatable sources:
  1. exact link whose event title is still similar        -> updated
     exact link whose event title is NOT similar           -> external_id
     collision signal, fall through (venue_only ids collide for a weekly
     quiz and a one-off special at the same venue)
  2. best Jaro-Winkler over non-isolated events at the venue >= threshold
                                                           -> consolidated
     best within near_miss_margin below threshold         -> near_miss signal
  3. otherwise create, keyed by e1|sha256(venue_id|normalized_title); a
     concurrent create of the same event surfaces as 23505 and we
     consolidate into the winner's row

Non-aggregatable sources skip 1's similarity test and all of 2.

Appends use an optimistic row lock on events.lock_version:
  UPDATE events SET ..., lock_version = v + 1 WHERE id = ? AND lock_version = v
Zero rows updated means another writer got there first: re-read, re-merge,
retry. A concurrent append is therefore never overwritten.

Wrong merges are data-quality signals, never exceptions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client

from ..config import EngineConfig
from ..dates import ResolvedStart, build_entry, parse_timestamp, resolve_start
from ..db.data_quality import (
    SIGNAL_EXTERNAL_ID_COLLISION,
    SIGNAL_NEAR_MISS,
    signal_fingerprint,
    write_signal,
)
from ..db.retry import execute_with_retry, is_unique_violation
from ..db.similarity_telemetry import SimilarityTelemetry
from ..errors import TransientError
from ..models import CandidateEvent, CanonicalEvent, Source, Venue
from ..occurrences import (
    OccurrenceEntry,
    Occurrences,
    PatternOccurrences,
    UnknownOccurrences,
    add_entry,
    dump_occurrences,
    entry_count,
    initial_occurrences,
)
from .dedupe_key import compute_event_dedupe_key, compute_isolated_event_dedupe_key
from .matching import normalize_title, similarity

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "id,title,normalized_title,starts_at,venue_id,status,occurrences,"
    "isolated,lock_version,metadata,updated_at"
)

DECISION_CREATED = "created"
DECISION_CONSOLIDATED = "consolidated"
DECISION_UPDATED = "updated"
DECISION_ISOLATED_CREATED = "isolated_created"

MAX_LOCK_ATTEMPTS = 8
FUZZY_CANDIDATE_LIMIT = 500


@dataclass(frozen=True)
class ConsolidationResult:
    event_id: str
    decision: str
    similarity: Optional[float] = None
    occurrence_added: bool = False
    signals_written: int = 0


@dataclass(frozen=True)
class _Match:
    event: CanonicalEvent
    score: float


class EventConsolidator:
    def __init__(
        self,
        supabase: Client,
        config: EngineConfig,
        *,
        telemetry: Optional[SimilarityTelemetry] = None,
    ) -> None:
        self.supabase = supabase
        self.config = config
        self.telemetry = telemetry

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def consolidate(
        self,
        candidate: CandidateEvent,
        source: Source,
        venue: Venue,
        performer_ids: Sequence[str],
        external_id: str,
        now_utc: datetime,
        *,
        start: Optional[ResolvedStart] = None,
    ) -> ConsolidationResult:
        if start is None:
            start = resolve_start(
                candidate,
                timezone=self.config.timezone,
                languages=self.config.date_languages,
            )
        entry = build_entry(candidate, start, external_id)
        norm = normalize_title(candidate.title)
        signals = 0

        linked = self._linked_event(source.source_id, external_id)

        if not source.aggregate_on_index:
            if linked is not None:
                event, added = self._append(linked, candidate, entry, start, now_utc)
                decision, score = DECISION_UPDATED, None
            else:
                event, added, decision = self._create(
                    candidate, source, venue, external_id, norm, entry, start, now_utc, isolated=True,
                )
                score = None
        else:
            match: Optional[_Match] = None

            if linked is not None and not linked.isolated:
                link_score = similarity(norm, linked.normalized_title)
                if link_score >= self.config.similarity_threshold:
                    match = _Match(event=linked, score=link_score)
                else:
                    signals += self._signal(
                        SIGNAL_EXTERNAL_ID_COLLISION,
                        source=source,
                        external_id=external_id,
                        event_id=linked.id,
                        fingerprint_parts=(source.source_id, external_id, linked.id, norm),
                        details={
                            "linked_title": linked.title,
                            "candidate_title": candidate.title,
                            "similarity": round(link_score, 4),
                            "threshold": self.config.similarity_threshold,
                        },
                    )

            if match is not None:
                event, added = self._append(match.event, candidate, entry, start, now_utc)
                decision, score = DECISION_UPDATED, match.score
            else:
                fuzzy, near, best_score = self._best_fuzzy_match(norm, venue.id)
                if near is not None:
                    signals += self._signal(
                        SIGNAL_NEAR_MISS,
                        source=source,
                        external_id=external_id,
                        event_id=near.event.id,
                        fingerprint_parts=(source.source_id, external_id, near.event.id),
                        details={
                            "event_title": near.event.title,
                            "candidate_title": candidate.title,
                            "similarity": round(near.score, 4),
                            "threshold": self.config.similarity_threshold,
                        },
                    )
                if fuzzy is not None:
                    event, added = self._append(fuzzy.event, candidate, entry, start, now_utc)
                    decision, score = DECISION_CONSOLIDATED, fuzzy.score
                else:
                    event, added, decision = self._create(
                        candidate, source, venue, external_id, norm, entry, start, now_utc, isolated=False,
                    )
                    score = best_score

        skip_reason = None
        if not added and decision in (DECISION_UPDATED, DECISION_CONSOLIDATED):
            skip_reason = (
                "pattern_rule_authoritative"
                if isinstance(event.occurrences, PatternOccurrences)
                else "occurrence_already_present"
            )

        self._upsert_link(source, external_id, event, candidate, skip_reason, now_utc)
        self._link_performers(event.id, performer_ids)

        logger.info(
            "[consolidator] %s event=%s source=%s ext=%s score=%s added=%s",
            decision.upper(), event.id, source.source_id, external_id,
            f"{score:.3f}" if score is not None else "-", added,
        )
        return ConsolidationResult(
            event_id=event.id,
            decision=decision,
            similarity=score,
            occurrence_added=added,
            signals_written=signals,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_event(self, **eq: Any) -> Optional[CanonicalEvent]:
        q = self.supabase.table("events").select(EVENT_COLUMNS)
        for col, val in eq.items():
            q = q.eq(col, val)
        rows = execute_with_retry(q.limit(1)).data or []
        return CanonicalEvent.model_validate(rows[0]) if rows else None

    def _linked_event(self, source_id: str, external_id: str) -> Optional[CanonicalEvent]:
        rows = (
            execute_with_retry(
                self.supabase.table("event_sources")
                .select("event_id")
                .eq("source_id", source_id)
                .eq("external_id", external_id)
                .limit(1)
            ).data
            or []
        )
        if not rows:
            return None
        return self._load_event(id=str(rows[0]["event_id"]))

    def _best_fuzzy_match(
        self, norm: str, venue_id: str
    ) -> tuple[Optional[_Match], Optional[_Match], Optional[float]]:
        """Returns (match, near_miss, best_score)."""
        rows = (
            execute_with_retry(
                self.supabase.table("events")
                .select(EVENT_COLUMNS)
                .eq("venue_id", venue_id)
                .eq("isolated", False)
                .order("id", desc=False)
                .limit(FUZZY_CANDIDATE_LIMIT)
            ).data
            or []
        )
        if not rows:
            return None, None, None

        best_row: Optional[dict[str, Any]] = None
        best_score = -1.0
        for r in rows:
            score = similarity(norm, r.get("normalized_title") or "")
            if score > best_score:
                best_row, best_score = r, score

        if self.telemetry is not None:
            self.telemetry.add(best_score)

        best = _Match(event=CanonicalEvent.model_validate(best_row), score=best_score)
        threshold = self.config.similarity_threshold
        if best_score >= threshold:
            return best, None, best_score
        if best_score >= threshold - self.config.near_miss_margin:
            return None, best, best_score
        return None, None, best_score

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _create(
        self,
        candidate: CandidateEvent,
        source: Source,
        venue: Venue,
        external_id: str,
        norm: str,
        entry: Optional[OccurrenceEntry],
        start: ResolvedStart,
        now_utc: datetime,
        *,
        isolated: bool,
    ) -> tuple[CanonicalEvent, bool, str]:
        occurrences = initial_occurrences(
            entry=entry,
            recurrence_rule=candidate.recurrence_rule,
            type_hint=candidate.occurrence_type_hint,
            raw_date_string=candidate.raw_date_string,
            now_utc=now_utc,
        )

        if isolated:
            dedupe_key = compute_isolated_event_dedupe_key(
                source_id=source.source_id, external_id=external_id,
            )
        else:
            dedupe_key = compute_event_dedupe_key(venue_id=venue.id, normalized_title=norm)

        metadata: dict[str, Any] = {"first_source_id": source.source_id}
        if isinstance(occurrences, UnknownOccurrences):
            metadata["original_date_string"] = candidate.raw_date_string
            starts_at = now_utc
        else:
            starts_at = start.start_at or now_utc

        status = "active"
        if candidate.cancellation_reason:
            status = "cancelled"
            metadata["cancellation_reason"] = candidate.cancellation_reason

        payload = {
            "title": candidate.title.strip(),
            "normalized_title": norm,
            "starts_at": starts_at.isoformat(),
            "venue_id": venue.id,
            "status": status,
            "occurrences": dump_occurrences(occurrences),
            "isolated": isolated,
            "lock_version": 0,
            "metadata": metadata,
            "dedupe_key": dedupe_key,
            "created_at": now_utc.isoformat(),
            "updated_at": now_utc.isoformat(),
        }

        try:
            res = execute_with_retry(self.supabase.table("events").insert(payload))
            if res.data:
                event = CanonicalEvent.model_validate(res.data[0])
                decision = DECISION_ISOLATED_CREATED if isolated else DECISION_CREATED
                return event, True, decision
        except APIError as e:
            if not is_unique_violation(e):
                raise

        # A concurrent task created the same canonical event first.
        winner = self._load_event(dedupe_key=dedupe_key)
        if winner is None:
            raise TransientError(f"event insert conflicted but dedupe_key={dedupe_key} not found")
        logger.info("[consolidator] create race lost, merging into event=%s", winner.id)
        event, added = self._append(winner, candidate, entry, start, now_utc)
        return event, added, DECISION_UPDATED if isolated else DECISION_CONSOLIDATED

    def _append(
        self,
        event: CanonicalEvent,
        candidate: CandidateEvent,
        entry: Optional[OccurrenceEntry],
        start: ResolvedStart,
        now_utc: datetime,
    ) -> tuple[CanonicalEvent, bool]:
        """
        Merge *entry* into *event* under the optimistic row lock.
        Returns (fresh event, occurrence_added).
        """
        current = event
        for attempt in range(MAX_LOCK_ATTEMPTS):
            merged, added = add_entry(current.occurrences, entry)
            update = self._merge_update(current, merged, added, candidate, start, now_utc)
            update["lock_version"] = current.lock_version + 1

            res = execute_with_retry(
                self.supabase.table("events")
                .update(update)
                .eq("id", current.id)
                .eq("lock_version", current.lock_version)
            )
            if res.data:
                return CanonicalEvent.model_validate(res.data[0]), added

            logger.info(
                "[consolidator] lock conflict event=%s version=%d attempt=%d/%d",
                current.id, current.lock_version, attempt + 1, MAX_LOCK_ATTEMPTS,
            )
            reloaded = self._load_event(id=current.id)
            if reloaded is None:
                raise TransientError(f"event {current.id} vanished during append")
            current = reloaded

        raise TransientError(f"lock contention on event {event.id}")

    def _merge_update(
        self,
        event: CanonicalEvent,
        merged: Occurrences,
        added: bool,
        candidate: CandidateEvent,
        start: ResolvedStart,
        now_utc: datetime,
    ) -> dict[str, Any]:
        update: dict[str, Any] = {"updated_at": now_utc.isoformat()}
        metadata = dict(event.metadata)

        if added:
            update["occurrences"] = dump_occurrences(merged)
            promoted = isinstance(event.occurrences, UnknownOccurrences)
            current_start = parse_timestamp(event.starts_at)
            if start.start_at is not None and (
                promoted or current_start is None or start.start_at < current_start
            ):
                update["starts_at"] = start.start_at.isoformat()

        # Cancellation only sticks to an event with a single occurrence;
        # cancelling one date of a run must not hide the others.
        if (
            candidate.cancellation_reason
            and event.status != "cancelled"
            and entry_count(merged) <= 1
            and not isinstance(merged, PatternOccurrences)
        ):
            update["status"] = "cancelled"
            metadata["cancellation_reason"] = candidate.cancellation_reason

        if metadata != event.metadata:
            update["metadata"] = metadata
        return update

    def _upsert_link(
        self,
        source: Source,
        external_id: str,
        event: CanonicalEvent,
        candidate: CandidateEvent,
        skip_reason: Optional[str],
        now_utc: datetime,
    ) -> None:
        metadata: dict[str, Any] = {
            "occurrence_type": candidate.occurrence_type_hint or event.occurrences.type,
        }
        if candidate.cancellation_reason:
            metadata["cancellation_reason"] = candidate.cancellation_reason
        if skip_reason:
            metadata["skip_reason"] = skip_reason
        if candidate.external_id_hint:
            metadata["upstream_id"] = candidate.external_id_hint

        execute_with_retry(
            self.supabase.table("event_sources").upsert(
                {
                    "source_id": source.source_id,
                    "external_id": external_id,
                    "event_id": event.id,
                    "metadata": metadata,
                    "last_seen_at": now_utc.isoformat(),
                },
                on_conflict="source_id,external_id",
            )
        )

    def _link_performers(self, event_id: str, performer_ids: Sequence[str]) -> None:
        rows = [{"event_id": event_id, "performer_id": pid} for pid in dict.fromkeys(performer_ids)]
        if not rows:
            return
        execute_with_retry(
            self.supabase.table("event_performers").upsert(
                rows, on_conflict="event_id,performer_id", ignore_duplicates=True,
            )
        )

    def _signal(
        self,
        signal_type: str,
        *,
        source: Source,
        external_id: str,
        event_id: str,
        fingerprint_parts: Sequence[Any],
        details: dict[str, Any],
    ) -> int:
        logger.warning(
            "[consolidator] SIGNAL %s source=%s ext=%s event=%s",
            signal_type, source.source_id, external_id, event_id,
        )
        created = write_signal(
            supabase=self.supabase,
            signal_type=signal_type,
            source_id=source.source_id,
            external_id=external_id,
            event_id=event_id,
            fingerprint=signal_fingerprint(signal_type, *fingerprint_parts),
            details=details,
        )
        return 1 if created else 0
