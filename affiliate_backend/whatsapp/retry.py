from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import WhatsAppError
from .observability import LogContext, Observability

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_s: float = 0.8
    max_delay_s: float = 10.0
    jitter_s: float = 0.2


class ProviderRetry:
    """Retries transient provider failures with exponential backoff.

    Non-transient errors (bad credentials, unknown instance) are re-raised on
    the first attempt.
    """

    def __init__(
        self,
        *,
        obs: Observability,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._obs = obs
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(self, op_name: str, fn: Callable[[], Awaitable[T]], *, log_ctx: Optional[LogContext] = None) -> T:
        delay = self._policy.initial_delay_s
        attempts = max(1, self._policy.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except WhatsAppError as e:
                self._obs.warning(
                    f"{op_name}.error",
                    ctx=log_ctx,
                    attempt=attempt,
                    code=e.code,
                    transient=e.transient,
                )
                if not e.transient or attempt >= attempts:
                    raise
            await self._sleep(_with_jitter(delay, self._policy.jitter_s))
            delay = min(delay * 2, self._policy.max_delay_s)
        raise AssertionError("unreachable")


def _with_jitter(delay_s: float, jitter_s: float) -> float:
    if jitter_s <= 0:
        return delay_s
    return max(0.0, delay_s + (jitter_s * 0.5))
