from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flowforge.core.config import Settings
from flowforge.core.context import build_context
from flowforge.persistence.db import create_schema
from flowforge.providers.engine.fake import FakeEngineClient
from flowforge.services.allocator import SlotAllocator


class FrozenClock:
    # Deterministic clock; tests move time forward explicitly.
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flowforge.db'}",
        project_count=2,
        slots_per_project=2,
        stale_metadata_grace_days=30,
        engine_provider="fake",
        engine_retry_attempts=3,
        engine_retry_base_delay_ms=1,
        engine_call_timeout_ms=2000,
        llm_provider="none",
        session_idle_timeout_hours=24,
        admin_tenant_ids="ops",
    )


@pytest.fixture
def engine() -> FakeEngineClient:
    return FakeEngineClient()


@pytest.fixture
async def ctx(settings, engine, clock):
    # Per-test SQLite file with the full schema and a bootstrapped 2x2 pool.
    context = build_context(settings, engine_client=engine, clock=clock)
    await create_schema(context.db_engine)
    await SlotAllocator(context).bootstrap_pool()
    yield context
    await context.aclose()
