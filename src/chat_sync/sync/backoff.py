"""Exponential retry delays with a ceiling."""
from __future__ import annotations

import random

from chat_sync.config import settings


def calc_delay(attempt: int, base: float, cap: float) -> float:
    return min(base * (2 ** attempt), cap)


class Backoff:
    """Tracks consecutive failures for one retry loop.

    ``max_attempts=None`` means the loop never gives up on its own.
    """

    def __init__(
        self,
        base: float | None = None,
        cap: float | None = None,
        *,
        max_attempts: int | None = None,
        jitter: float | None = None,
    ) -> None:
        self.base = settings.BACKOFF_BASE_SECONDS if base is None else base
        self.cap = settings.BACKOFF_MAX_SECONDS if cap is None else cap
        self.jitter = settings.BACKOFF_JITTER if jitter is None else jitter
        self.max_attempts = max_attempts
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self._attempt >= self.max_attempts

    def next_delay(self, attempt: int | None = None) -> float:
        delay = calc_delay(self._attempt if attempt is None else attempt, self.base, self.cap)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def advance(self) -> float:
        """Delay for the current attempt; counts the attempt as used."""
        delay = self.next_delay()
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0
