from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Mapping


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter:
    """Rolling-window request counter keyed by client address.

    State is per process; several instances behind a load balancer each keep
    their own counts.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = math.ceil(hits[0] + self.window_seconds - now)
                return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=max(1, retry_after))

            hits.append(now)
            if len(self._hits) > 1024:
                self._prune(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(hits))

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def client_key(headers: Mapping[str, str], peer: str | None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"
