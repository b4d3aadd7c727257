from __future__ import annotations

from flowforge.core.errors import LLMError


class FakeLLMProvider:
    def __init__(self, response: str = "Could you tell me more about that?", *, fail: bool = False) -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self._fail = fail
        self.prompts: list[list[dict]] = []

    async def complete(self, messages: list[dict]) -> str:
        self.prompts.append(list(messages))
        if self._fail:
            raise LLMError("fake LLM failure")
        return self._response
