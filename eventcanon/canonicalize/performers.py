# eventcanon/canonicalize/performers.py
"""
Performer resolution: same shape as venues minus the spatial part.
public.performers.normalized_name is UNIQUE; creation is insert-or-retrieve.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..db.retry import execute_with_retry, is_unique_violation
from ..errors import TransientError
from ..models import Performer
from .matching import normalize_name

logger = logging.getLogger(__name__)

PERFORMER_COLUMNS = "id,name,normalized_name"


class PerformerDeduplicator:
    def __init__(self, supabase: Client) -> None:
        self.supabase = supabase

    def _select(self, norm: str) -> Optional[Performer]:
        rows = (
            execute_with_retry(
                self.supabase.table("performers")
                .select(PERFORMER_COLUMNS)
                .eq("normalized_name", norm)
                .limit(1)
            ).data
            or []
        )
        return Performer.model_validate(rows[0]) if rows else None

    def resolve(self, name: Optional[str]) -> Optional[Performer]:
        """Blank names resolve to None."""
        display = (name or "").strip()
        norm = normalize_name(display)
        if not norm:
            return None

        existing = self._select(norm)
        if existing is not None:
            return existing

        try:
            res = execute_with_retry(
                self.supabase.table("performers").insert({"name": display, "normalized_name": norm})
            )
            if res.data:
                logger.info("[performers] CREATED id=%s name=%r", res.data[0].get("id"), display)
                return Performer.model_validate(res.data[0])
        except APIError as e:
            if not is_unique_violation(e):
                raise

        winner = self._select(norm)
        if winner is None:
            raise TransientError(f"performer insert conflicted but normalized_name={norm!r} not found")
        return winner

    def resolve_many(self, names: Iterable[Optional[str]]) -> list[str]:
        """Resolve hints to performer ids, order kept, duplicates collapsed."""
        ids: list[str] = []
        seen_norm: set[str] = set()
        for name in names or []:
            norm = normalize_name(name)
            if not norm or norm in seen_norm:
                continue
            seen_norm.add(norm)
            performer = self.resolve(name)
            if performer is not None and performer.id not in ids:
                ids.append(performer.id)
        return ids
