import asyncio, random, time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Type

from src.settings import (
    CB_COOL_OFF_S,
    CB_ERROR_THRESHOLD,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
)


class RetryableError(Exception):
    """Transient model failure (rate limit) worth another attempt."""


class CircuitOpen(Exception):
    pass


@dataclass
class BackoffPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay_ms: int = RETRY_BASE_DELAY_MS
    max_delay_ms: int = RETRY_MAX_DELAY_MS

    def delay_s(self, attempt: int) -> float:
        """Jittered exponential delay before retry number ``attempt`` (1-based)."""
        capped = min(self.max_delay_ms, self.base_delay_ms * (2 ** (attempt - 1)))
        return capped * (0.8 + 0.4 * random.random()) / 1000.0


async def with_retry(
    fn: Callable[[], Awaitable],
    retry_on: Sequence[Type[Exception]] = (RetryableError,),
    policy: Optional[BackoffPolicy] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    policy = policy or BackoffPolicy()
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not isinstance(e, tuple(retry_on)):
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(policy.delay_s(attempt))


class CircuitBreaker:
    """Opens after ``error_threshold`` consecutive failures; half-opens after ``cool_off_s``."""

    def __init__(
        self,
        error_threshold: int = CB_ERROR_THRESHOLD,
        cool_off_s: float = CB_COOL_OFF_S,
        clock: Callable[[], float] = time.time,
    ):
        self.error_threshold = max(1, error_threshold)
        self.cool_off_s = cool_off_s
        self._clock = clock
        self._errors = 0
        self._opened_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        if self._opened_at is None:
            return True
        if self._clock() - self._opened_at >= self.cool_off_s:
            self._errors, self._opened_at = 0, None
            return True
        return False

    def guard(self) -> None:
        if not self.closed:
            raise CircuitOpen(f"open for up to {self.cool_off_s}s after {self._errors} errors")

    def on_success(self) -> None:
        self._errors, self._opened_at = 0, None

    def on_error(self) -> None:
        self._errors += 1
        if self._errors >= self.error_threshold and self._opened_at is None:
            self._opened_at = self._clock()
