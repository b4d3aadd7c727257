from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from flowforge.core.clock import utc_now
from flowforge.core.config import Settings
from flowforge.persistence.db import build_session_factory, create_engine_from_settings
from flowforge.providers.engine.base import EngineClient
from flowforge.providers.engine.factory import get_engine_client
from flowforge.providers.llm.base import LLMProvider
from flowforge.providers.llm.factory import get_llm_provider
from flowforge.services.catalog import CapabilityCatalog, load_catalog
from flowforge.services.sessions import SessionLockRegistry
from flowforge.services.telemetry import Telemetry


@dataclass
class AutomationContext:
    """Everything a core operation needs, passed explicitly instead of read from globals."""

    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    catalog: CapabilityCatalog
    engine_client: EngineClient | None = None
    llm: LLMProvider | None = None
    clock: Callable[[], datetime] = utc_now
    session_locks: SessionLockRegistry = field(default_factory=SessionLockRegistry)
    telemetry: Telemetry = field(default_factory=Telemetry)

    def now(self) -> datetime:
        return self.clock()

    async def aclose(self) -> None:
        close = getattr(self.engine_client, "aclose", None)
        if close is not None:
            await close()
        await self.db_engine.dispose()


def build_context(
    settings: Settings,
    *,
    database_url: str | None = None,
    engine_client: EngineClient | None = None,
    llm: LLMProvider | None = None,
    catalog: CapabilityCatalog | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AutomationContext:
    db_engine = create_engine_from_settings(settings, url=database_url)
    telemetry = Telemetry()
    return AutomationContext(
        settings=settings,
        db_engine=db_engine,
        session_factory=build_session_factory(db_engine),
        catalog=catalog or load_catalog(settings.capability_catalog_path),
        engine_client=engine_client if engine_client is not None else get_engine_client(settings, telemetry),
        llm=llm if llm is not None else get_llm_provider(settings, telemetry),
        clock=clock or utc_now,
        telemetry=telemetry,
    )
