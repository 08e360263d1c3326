# eventcanon/db/data_quality.py
"""
Data-quality signals: near-miss matches, external-id collisions and
same-name venues created side by side.

Written to public.consolidation_signals, which carries a PARTIAL unique index
  uniq_open_signal_fingerprint (fingerprint) WHERE status = 'open'

so writing the same signal twice while it is still open is a no-op.
A failing signal write never fails consolidation: it is logged and dropped.
"""
from __future__ import annotations

import logging
from hashlib import sha256
from typing import Any, Mapping

from postgrest.exceptions import APIError
from supabase import Client

from .retry import TRANSIENT_HTTP_ERRORS, execute_with_retry, is_unique_violation

logger = logging.getLogger(__name__)

SIGNAL_NEAR_MISS = "near_miss"
SIGNAL_EXTERNAL_ID_COLLISION = "external_id_collision"
SIGNAL_VENUE_DUPLICATE = "venue_duplicate"


def signal_fingerprint(signal_type: str, *parts: Any) -> str:
    seed = "|".join([signal_type, *[str(p) for p in parts]])
    return sha256(seed.encode("utf-8")).hexdigest()


def write_signal(
    *,
    supabase: Client,
    signal_type: str,
    source_id: str,
    external_id: str | None,
    fingerprint: str,
    event_id: str | None = None,
    details: Mapping[str, Any] | None = None,
) -> bool:
    """
    Insert an open signal. Returns True if a row was created, False if an
    open signal with this fingerprint already existed or the write failed.
    """
    payload: dict[str, Any] = {
        "signal_type": signal_type,
        "status": "open",
        "source_id": source_id,
        "external_id": external_id,
        "event_id": event_id,
        "fingerprint": fingerprint,
        "details": dict(details or {}),
    }
    payload = {k: v for k, v in payload.items() if v is not None}

    try:
        execute_with_retry(supabase.table("consolidation_signals").insert(payload))
        return True
    except APIError as e:
        if is_unique_violation(e):
            return False
        logger.error(
            "[data_quality] signal write failed type=%s source=%s ext=%s err=%r",
            signal_type, source_id, external_id, e,
        )
        return False
    except TRANSIENT_HTTP_ERRORS as e:
        logger.error(
            "[data_quality] signal write failed type=%s source=%s ext=%s err=%r",
            signal_type, source_id, external_id, e,
        )
        return False
