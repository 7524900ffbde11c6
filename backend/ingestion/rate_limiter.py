"""Token-bucket rate limiter shared by every call to one provider endpoint.

Callers block in ``acquire`` until a token is available. Waiters are admitted one
at a time, so concurrent callers queue behind each other instead of racing for
the next refill.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock


@dataclass(slots=True)
class BucketConfig:
    tokens_per_second: float
    max_burst: int = 1
    name: str = ""

    @classmethod
    def from_interval(cls, min_interval_seconds: float, *, name: str = "") -> "BucketConfig":
        return cls(tokens_per_second=1.0 / min_interval_seconds, max_burst=1, name=name)


class TokenBucket:
    def __init__(
        self,
        config: BucketConfig,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._monotonic = monotonic
        self._sleep = sleep
        self._tokens: float = float(config.max_burst)
        self._last_refill: float = monotonic()
        self._lock = Lock()
        self._queue = Lock()
        self._total_requests = 0
        self._total_waits = 0

    def _refill(self) -> None:
        now = self._monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + elapsed * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._total_requests += 1
                return True
            return False

    def wait_time(self) -> float:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    def acquire(self) -> None:
        with self._queue:
            while True:
                wait = self.wait_time()
                if wait <= 0:
                    if self.try_acquire():
                        return
                else:
                    self._total_waits += 1
                    self._sleep(wait)

    @property
    def stats(self) -> dict[str, int]:
        return {"total_requests": self._total_requests, "total_waits": self._total_waits}


__all__ = ["BucketConfig", "TokenBucket"]
