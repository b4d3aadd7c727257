from __future__ import annotations

from flowforge.core.config import Settings
from flowforge.core.errors import ProviderConfigError
from flowforge.providers.llm.base import LLMProvider
from flowforge.providers.llm.fake import FakeLLMProvider
from flowforge.providers.llm.gemini_vertex import GeminiVertexProvider
from flowforge.services.telemetry import Telemetry


def get_llm_provider(settings: Settings, telemetry: Telemetry | None = None) -> LLMProvider | None:
    # "none" keeps clarifying questions on the built-in templates.
    provider = (settings.llm_provider or "none").lower()
    if provider == "none":
        return None
    if provider == "fake":
        return FakeLLMProvider()
    if provider == "vertex":
        return GeminiVertexProvider(settings, telemetry=telemetry)
    raise ProviderConfigError(f"Unknown LLM provider: {settings.llm_provider}")
