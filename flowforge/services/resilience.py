from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from flowforge.core.config import Settings
from flowforge.core.errors import EngineTransientError
from flowforge.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, asyncio.TimeoutError, OSError, EngineTransientError)


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures; 4xx rejections surface immediately.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    # Jitter bounds; tests pin both to 1.0 for exact delays.
    jitter_min: float = 0.5
    jitter_max: float = 1.5


def engine_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        timeout_ms=settings.engine_call_timeout_ms,
        max_attempts=settings.engine_retry_attempts,
        backoff_ms=settings.engine_retry_base_delay_ms,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    jitter = random.uniform(policy.jitter_min, policy.jitter_max)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "external_call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    telemetry: Telemetry | None = None,
) -> Any:
    # Bounded attempts with exponential, jittered backoff; each attempt is time-boxed.
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            if telemetry is not None:
                telemetry.increment_counter(f"{operation}_retries_total")
            delay = backoff_delay_s(policy, attempt)
            logger.warning(
                "retry_scheduled operation=%s attempt=%s delay_s=%.3f error=%s",
                operation,
                attempt,
                delay,
                type(exc).__name__,
            )
            await sleep(delay)
            attempt += 1
