from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

load_dotenv()

DEFAULT_FRESHNESS_HOURS = 168
DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_VENUE_RADIUS_M = 50.0


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def parse_overrides(raw: str | None) -> dict[str, int]:
    """
    Parse "kino-krakow=24,cinema-city=48" into {"kino-krakow": 24, ...}.
    Malformed pairs are ignored.
    """
    out: dict[str, int] = {}
    for part in (raw or "").split(","):
        if "=" not in part:
            continue
        slug, hours = part.split("=", 1)
        slug = slug.strip()
        try:
            out[slug] = int(hours.strip())
        except ValueError:
            continue
    return {k: v for k, v in out.items() if k}


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables for freshness, matching and the ingest worker pool.

    The threshold and window are empirically tuned; every component receives
    this object explicitly instead of reading module globals.
    """
    freshness_window_hours: int = DEFAULT_FRESHNESS_HOURS
    freshness_overrides: Mapping[str, int] = field(default_factory=dict)
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    near_miss_margin: float = 0.05
    venue_radius_meters: float = DEFAULT_VENUE_RADIUS_M
    max_attempts: int = 3
    retry_base_sleep: float = 0.5
    max_workers: int = 8
    bypass_recurring: bool = False
    predicted_requires_known_date: bool = False
    timezone: str = "UTC"
    date_languages: tuple[str, ...] = ("en", "pl", "de", "fr", "es")

    def window_hours_for(self, source_id: str, source_window: int | None = None) -> int:
        """Source row setting wins, then config override, then the default."""
        if source_window:
            return int(source_window)
        return int(self.freshness_overrides.get(source_id, self.freshness_window_hours))

    @classmethod
    def from_env(cls) -> "EngineConfig":
        workers = _env_int("EVENTCANON_WORKERS", 8)
        workers = max(1, min(workers, 32))  # sensible cap

        langs = tuple(
            s.strip()
            for s in (os.getenv("EVENTCANON_DATE_LANGUAGES") or "en,pl,de,fr,es").split(",")
            if s.strip()
        )

        return cls(
            freshness_window_hours=_env_int("EVENTCANON_FRESHNESS_HOURS", DEFAULT_FRESHNESS_HOURS),
            freshness_overrides=parse_overrides(os.getenv("EVENTCANON_FRESHNESS_OVERRIDES")),
            similarity_threshold=_env_float(
                "EVENTCANON_SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD
            ),
            near_miss_margin=_env_float("EVENTCANON_NEAR_MISS_MARGIN", 0.05),
            venue_radius_meters=_env_float("EVENTCANON_VENUE_RADIUS_M", DEFAULT_VENUE_RADIUS_M),
            max_attempts=max(1, _env_int("EVENTCANON_MAX_ATTEMPTS", 3)),
            retry_base_sleep=_env_float("EVENTCANON_RETRY_BASE_SLEEP", 0.5),
            max_workers=workers,
            bypass_recurring=_env_bool("EVENTCANON_BYPASS_RECURRING", False),
            predicted_requires_known_date=_env_bool("EVENTCANON_PREDICTED_REQUIRES_KNOWN_DATE", False),
            timezone=os.getenv("TIMEZONE", "UTC"),
            date_languages=langs,
        )
