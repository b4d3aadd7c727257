from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


class Telemetry:
    """In-process call samples and counters, owned by one AutomationContext."""

    def __init__(self, *, max_samples: int = 10000) -> None:
        self._external_samples: Deque[ExternalCallSample] = deque(maxlen=max_samples)
        self._counters: dict[str, int] = defaultdict(int)

    def record_external_call(self, *, integration: str, latency_ms: float, success: bool) -> None:
        # Capture engine/LLM call latency and outcomes.
        self._external_samples.append(
            ExternalCallSample(
                ts=time.time(),
                integration=integration,
                latency_ms=latency_ms,
                success=success,
            )
        )

    def increment_counter(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def external_latency_by_integration(self, window_s: int) -> dict[str, dict[str, float | None]]:
        # Aggregate external call latency and error counts for the health endpoint.
        cutoff = time.time() - window_s
        by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
        for sample in self._external_samples:
            if sample.ts < cutoff:
                continue
            by_integration[sample.integration].append(sample)
        result: dict[str, dict[str, float | None]] = {}
        for integration, samples in by_integration.items():
            latencies = sorted(sample.latency_ms for sample in samples)
            p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
            result[integration] = {
                "p95": latencies[p95_idx],
                "max": latencies[-1],
                "errors": float(sum(1 for sample in samples if not sample.success)),
            }
        return result

    def counters_snapshot(self) -> dict[str, int]:
        return dict(self._counters)
