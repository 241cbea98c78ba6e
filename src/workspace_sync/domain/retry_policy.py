from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import anyio

from workspace_sync.config import Settings, settings
from workspace_sync.errors import is_write_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with uniform random backoff.

    ``max_attempts`` counts the first call. The backoff is drawn from
    ``[backoff_min_ms, backoff_max_ms)`` so concurrent clients do not retry in lockstep.
    """

    max_attempts: int = 3
    backoff_min_ms: int = 50
    backoff_max_ms: int = 200
    is_retryable: Callable[[BaseException], bool] = is_write_conflict
    rng: random.Random = field(default_factory=random.Random, compare=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=anyio.sleep, compare=False)

    @classmethod
    def from_settings(cls, cfg: Settings | None = None, **overrides: object) -> "RetryPolicy":
        cfg = cfg or settings
        values: dict[str, object] = {
            "max_attempts": cfg.move_retry_max_attempts,
            "backoff_min_ms": cfg.move_retry_backoff_min_ms,
            "backoff_max_ms": cfg.move_retry_backoff_max_ms,
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    def next_delay_seconds(self) -> float:
        span = self.backoff_max_ms - self.backoff_min_ms
        return (self.backoff_min_ms + self.rng.random() * span) / 1000.0

    async def run(self, call: Callable[[int], Awaitable[T]], *, label: str = "call") -> T:
        """Invoke ``call(attempt)`` (attempt starts at 0) until it succeeds or gives up.

        The last error is re-raised unchanged when attempts are exhausted or the
        error is not retryable.
        """
        attempt = 0
        while True:
            try:
                return await call(attempt)
            except Exception as exc:
                attempt += 1
                if not self.is_retryable(exc) or attempt >= self.max_attempts:
                    if attempt > 1:
                        logger.warning("%s failed after %s attempts: %s", label, attempt, exc)
                    raise
                delay = self.next_delay_seconds()
                logger.info(
                    "%s hit contention (%s); retry %s/%s in %.0fms",
                    label,
                    exc,
                    attempt + 1,
                    self.max_attempts,
                    delay * 1000,
                )
                await self.sleep(delay)
