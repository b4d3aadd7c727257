from __future__ import annotations

from flowforge.core.config import Settings
from flowforge.core.errors import ProviderConfigError
from flowforge.providers.engine.base import EngineClient
from flowforge.providers.engine.fake import FakeEngineClient
from flowforge.providers.engine.rest import HttpEngineClient
from flowforge.services.telemetry import Telemetry


def get_engine_client(settings: Settings, telemetry: Telemetry | None = None) -> EngineClient | None:
    provider = (settings.engine_provider or "http").lower()
    if provider == "none":
        return None
    if provider == "fake":
        return FakeEngineClient()
    if provider == "http":
        return HttpEngineClient(settings, telemetry=telemetry)
    raise ProviderConfigError(f"Unknown engine provider: {settings.engine_provider}")
