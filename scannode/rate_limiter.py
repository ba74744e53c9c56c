"""Per-client token bucket rate limiting."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

_CLEANUP_INTERVAL = 3600.0
_MAX_IDLE = 600.0


@dataclass
class _ClientLimiter:
    tokens: float
    last: float
    last_reservation: float


class RateLimiter:
    """Limits the request rate of each client with its own token bucket."""

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("non-positive rate limiter arg")
        self._rate = float(rate)
        self._burst = burst
        self._clock = clock
        self._limiters: dict[str, _ClientLimiter] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def exceeds_limit(self, client_id: str) -> bool:
        """Take a token for the client; tell whether the limit was hit."""
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= _CLEANUP_INTERVAL:
                self._remove_idle(now, _MAX_IDLE)
                self._last_cleanup = now

            limiter = self._limiters.get(client_id)
            if limiter is None:
                limiter = _ClientLimiter(tokens=float(self._burst), last=now, last_reservation=now)
                self._limiters[client_id] = limiter
            limiter.last_reservation = now

            elapsed = max(0.0, now - limiter.last)
            tokens = min(float(self._burst), limiter.tokens + elapsed * self._rate)
            limiter.last = now
            if tokens >= 1:
                limiter.tokens = tokens - 1
                return False
            limiter.tokens = tokens
            return True

    def cleanup(self, max_idle: float = _MAX_IDLE) -> int:
        """Drop limiters idle for longer than max_idle seconds; return how many."""
        with self._lock:
            return self._remove_idle(self._clock(), max_idle)

    def _remove_idle(self, now: float, max_idle: float) -> int:
        idle = [
            client_id
            for client_id, limiter in self._limiters.items()
            if now - limiter.last_reservation > max_idle
        ]
        for client_id in idle:
            del self._limiters[client_id]
        return len(idle)