# eventcanon/db/similarity_telemetry.py
"""
Best-match similarity per consolidated candidate, summarised for
ingest_run_stats (similarity_min/avg/max + similarity_histogram).

Observability only. The 0.80-0.85 band sits right under the default match
threshold and gets its own bucket so near misses show up in run stats.
"""
from __future__ import annotations

import threading
from bisect import bisect_right
from dataclasses import dataclass, field

# Lower edges of buckets 2..n; scores are clamped to [0, 1].
BUCKET_EDGES: tuple[float, ...] = (0.5, 0.7, 0.8, 0.85, 0.95)
BUCKET_KEYS: tuple[str, ...] = ("0_50", "50_70", "70_80", "80_85", "85_95", "95_100")


def bucket_key(score: float) -> str:
    return BUCKET_KEYS[bisect_right(BUCKET_EDGES, _clamp(score))]


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


@dataclass
class ScoreStats:
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None

    @property
    def avg(self) -> float | None:
        return self.total / self.count if self.count else None

    def add(self, score: float) -> None:
        s = _clamp(score)
        self.count += 1
        self.total += s
        self.min = s if self.min is None else min(self.min, s)
        self.max = s if self.max is None else max(self.max, s)


@dataclass
class SimilarityTelemetry:
    """Shared by ingest workers; every update takes the lock."""

    stats: ScoreStats = field(default_factory=ScoreStats)
    hist: dict[str, int] = field(default_factory=lambda: dict.fromkeys(BUCKET_KEYS, 0))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, score: float) -> None:
        with self._lock:
            self.stats.add(score)
            self.hist[bucket_key(score)] += 1
