from __future__ import annotations

import asyncio
import logging
import time

from flowforge.core.config import Settings
from flowforge.core.errors import LLMError, LLMTimeoutError, ProviderConfigError
from flowforge.services.telemetry import Telemetry

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    def __init__(self, settings: Settings, telemetry: Telemetry | None = None) -> None:
        self._settings = settings
        self.telemetry = telemetry or Telemetry()

    def _record(self, start: float, *, success: bool) -> None:
        latency_ms = (time.monotonic() - start) * 1000.0
        self.telemetry.record_external_call(integration="llm.vertex", latency_ms=latency_ms, success=success)

    def _format_messages(self, messages: list[dict]) -> str:
        # Preserve roles and keep system guidance at the top of the prompt.
        system_lines: list[str] = []
        other_lines: list[str] = []
        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")
            line = f"{role.upper()}: {content}"
            if role == "system":
                system_lines.append(line)
            else:
                other_lines.append(line)
        return "\n".join(system_lines + other_lines)

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(
                f"Vertex config missing: set {', '.join(missing)} in .env."
            )
        return project, location, model

    def _generate(self, prompt: str, project: str, location: str, model_name: str) -> str:
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        init(project=project, location=location)
        model = GenerativeModel(model_name)
        response = model.generate_content(prompt)
        return getattr(response, "text", "") or ""

    async def complete(self, messages: list[dict]) -> str:
        project, location, model_name = self._validate_config()
        timeout_s = max(0.1, self._settings.llm_call_timeout_ms / 1000.0)
        prompt = self._format_messages(messages)
        start = time.monotonic()
        try:
            # The SDK call blocks; keep it off the event loop.
            text = await asyncio.wait_for(
                asyncio.to_thread(self._generate, prompt, project, location, model_name),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            self._record(start, success=False)
            logger.warning("vertex_complete_timeout model=%s", model_name)
            raise LLMTimeoutError("Vertex completion timed out.") from exc
        except ProviderConfigError:
            raise
        except Exception as exc:
            self._record(start, success=False)
            logger.error("vertex_complete_error model=%s", model_name)
            raise LLMError("Vertex AI request failed. Check credentials and model access.") from exc
        self._record(start, success=True)
        return text.strip()
