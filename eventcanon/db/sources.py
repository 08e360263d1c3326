from __future__ import annotations

import logging
from typing import Any, List, Mapping

from supabase import Client

from ..errors import EngineError
from ..models import Source
from .retry import execute_with_retry

logger = logging.getLogger(__name__)

SOURCE_COLUMNS = "source_id,name,aggregate_on_index,identity_policy,freshness_window_hours,is_enabled"


def source_from_row(r: Mapping[str, Any]) -> Source:
    """
    Coerce a public.sources row. Sources are configuration, so a malformed
    optional column falls back to the safe default instead of failing ingest.
    """
    window_raw = r.get("freshness_window_hours")
    try:
        window = int(window_raw) if window_raw is not None else None
    except (TypeError, ValueError):
        window = None

    aggregate = r.get("aggregate_on_index")
    return Source(
        source_id=str(r.get("source_id", "")).strip(),
        name=r.get("name"),
        aggregate_on_index=True if aggregate is None else bool(aggregate),
        identity_policy=str(r.get("identity_policy") or "date_embedded").strip().lower(),
        freshness_window_hours=window if window and window > 0 else None,
        is_enabled=bool(r.get("is_enabled", True)),
    )


def load_source(supabase: Client, source_id: str) -> Source:
    rows = (
        execute_with_retry(
            supabase.table("sources")
            .select(SOURCE_COLUMNS)
            .eq("source_id", source_id)
            .limit(1)
        ).data
        or []
    )
    if not rows:
        raise EngineError(f"Unknown source: {source_id!r}")
    return source_from_row(rows[0])


def load_enabled_sources(supabase: Client) -> List[Source]:
    rows = (
        execute_with_retry(
            supabase.table("sources")
            .select(SOURCE_COLUMNS)
            .eq("is_enabled", True)
            .order("source_id", desc=False)
        ).data
        or []
    )
    sources = [source_from_row(r) for r in rows]
    sources = [s for s in sources if s.source_id]
    logger.info("[sources] loaded enabled=%d", len(sources))
    return sources
