# rate_limiter.py
# Token usage tracking and rate-limit wait mediation.
#
# No hard-coded quota: the authoritative signal is the transport's own 429
# response and its retry delay. The sliding window exists for display only.

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class UsageSample(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    timestamp: float = Field(default_factory=time.time)


class RateLimitStatus(BaseModel):
    current_usage: int
    cached_tokens_read: int


class RateLimiterEvent(BaseModel):
    type: Literal["waiting", "resumed", "usage_update"]
    wait_ms: int | None = None
    current_usage: int | None = None
    cached_tokens_read: int | None = None
    message: str | None = None


RateLimitListener = Callable[[RateLimiterEvent], None]


class RateLimiter:
    """
    Sliding window of recent usage plus the sleep/resume protocol for 429s.

    `clock` and `sleep` are injectable so tests never wait on wall time.
    """

    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._history: list[UsageSample] = []
        self._listeners: list[RateLimitListener] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on(self, listener: RateLimitListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: RateLimiterEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Rate limit listener failed on %s event", event.type)

    # ------------------------------------------------------------------
    # Usage window
    # ------------------------------------------------------------------

    def _prune(self) -> None:
        cutoff = self._clock() - self._window
        self._history = [u for u in self._history if u.timestamp > cutoff]

    def current_usage(self) -> int:
        """Quota-consuming tokens in the window. Cache reads are excluded."""
        self._prune()
        return sum(u.input_tokens + u.output_tokens + u.cache_creation_tokens for u in self._history)

    def cached_tokens_read(self) -> int:
        self._prune()
        return sum(u.cache_read_tokens for u in self._history)

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> None:
        self._history.append(
            UsageSample(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_creation_tokens=cache_creation_tokens,
                cache_read_tokens=cache_read_tokens,
                timestamp=self._clock(),
            )
        )
        self._emit(
            RateLimiterEvent(
                type="usage_update",
                current_usage=self.current_usage(),
                cached_tokens_read=self.cached_tokens_read(),
            )
        )

    def status(self) -> RateLimitStatus:
        return RateLimitStatus(
            current_usage=self.current_usage(),
            cached_tokens_read=self.cached_tokens_read(),
        )

    # ------------------------------------------------------------------
    # 429 handling
    # ------------------------------------------------------------------

    def handle_rate_limit(self, retry_after_ms: int) -> None:
        """Announce the wait, block for exactly `retry_after_ms`, announce the resume."""
        self._emit(
            RateLimiterEvent(
                type="waiting",
                wait_ms=retry_after_ms,
                current_usage=self.current_usage(),
                message=f"Rate limited by API. Retry after {math.ceil(retry_after_ms / 1000)}s...",
            )
        )
        self._sleep(retry_after_ms / 1000)
        self._emit(RateLimiterEvent(type="resumed", message="Resuming after rate limit"))
