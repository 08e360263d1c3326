from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from eventcanon.db.similarity_telemetry import BUCKET_KEYS, SimilarityTelemetry, bucket_key


@pytest.mark.parametrize(
    "score, key",
    [
        (0.0, "0_50"),
        (0.6, "50_70"),
        (0.79, "70_80"),
        (0.84, "80_85"),
        (0.85, "85_95"),
        (0.97, "95_100"),
        (1.0, "95_100"),
        (1.7, "95_100"),
        (-1.0, "0_50"),
    ],
)
def test_bucket_key(score, key):
    assert bucket_key(score) == key


def test_telemetry_accumulates_across_threads():
    t = SimilarityTelemetry()
    scores = [0.5, 0.9, 0.84] * 100
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(t.add, scores))

    assert t.stats.count == 300
    assert t.stats.min == 0.5
    assert t.stats.max == 0.9
    assert t.stats.avg == pytest.approx((0.5 + 0.9 + 0.84) / 3)
    assert sum(t.hist.values()) == 300
    assert set(t.hist) == set(BUCKET_KEYS)
    assert t.hist["80_85"] == 100
