"""
Sliding-window limiter for unauthenticated pairing submissions.

Pairing codes are short, so redemption attempts are capped per client IP.
State is per process.
"""
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Tuple

from fastapi import HTTPException, Request

from auth import _client_ip
from config import config
from observability import structured_logger, metrics


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def check_rate_limit(self, key: str, max_requests: int, window_seconds: float = 60.0) -> Tuple[bool, float]:
        """
        Record one hit for key if it fits in the window.

        Returns:
            Tuple of (is_allowed, retry_after_seconds)
        """
        now = self._clock()
        window_start = now - window_seconds

        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()

            if len(hits) >= max_requests:
                return False, max(hits[0] - window_start, 0.0)

            hits.append(now)
            return True, 0.0

    def reset(self, key: str = None):
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def cleanup_old_entries(self, window_seconds: float = 60.0) -> int:
        """Drop keys with no hits inside the window; returns how many were dropped."""
        cutoff = self._clock() - window_seconds
        with self._lock:
            stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
            for key in stale:
                del self._hits[key]
        return len(stale)


pairing_rate_limiter = RateLimiter()


async def limit_pairing_submissions(request: Request) -> None:
    client_ip = _client_ip(request)
    allowed, retry_after = pairing_rate_limiter.check_rate_limit(
        f"pairing_submit:{client_ip}",
        max_requests=config.pairing_submit_max_per_minute
    )
    if not allowed:
        metrics.inc_counter("pairing_submit_rate_limited_total")
        structured_logger.log_event(
            "pairing.submit.rate_limited",
            level="WARN",
            client_ip=client_ip
        )
        raise HTTPException(
            status_code=429,
            detail="Too many pairing attempts, slow down",
            headers={"Retry-After": str(int(retry_after) + 1)}
        )
