from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.fakes import FakeSupabase

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def config():
    from eventcanon.config import EngineConfig

    return EngineConfig(max_workers=4, retry_base_sleep=0.0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def engine(fake_db, config):
    from eventcanon.pipeline import ConsolidationEngine

    clock = {"now": NOW}
    eng = ConsolidationEngine(fake_db, config, clock=lambda: clock["now"])
    eng.test_clock = clock  # tests move time forward through this dict
    return eng
