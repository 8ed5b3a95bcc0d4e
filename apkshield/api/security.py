"""
Ingress gate: per-client sliding-window rate limiting.
"""

import threading
import time
from typing import Dict, List, Tuple

from fastapi import Request

from apkshield.config import settings
from apkshield.errors import RateLimitExceededError
from apkshield.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


class RateLimiter:
    """
    In-memory sliding-window rate limiter.
    State is shared by every request being served, so all access goes
    through a lock. For multi-process deployments, use Redis instead.
    """

    def __init__(self):
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def _clean_old_requests(self, key: str, window: int, now: float) -> List[float]:
        """Remove requests outside the current window; idle clients are forgotten."""
        recent = [ts for ts in self._requests.get(key, ()) if now - ts < window]
        if recent:
            self._requests[key] = recent
        else:
            self._requests.pop(key, None)
        return recent

    def _sweep(self, window: int, now: float):
        """Forget clients with no request inside the window, at most once per window."""
        if now - self._last_sweep < window:
            return
        self._last_sweep = now
        idle = [key for key, stamps in self._requests.items() if now - stamps[-1] >= window]
        for key in idle:
            del self._requests[key]

    def is_allowed(self, key: str, limit: int, window: int) -> Tuple[bool, int]:
        """
        Check if a request is allowed and record it when it is.

        Returns:
            (allowed: bool, remaining: int)
        """
        with self._lock:
            now = time.time()
            self._sweep(window, now)
            recent = self._clean_old_requests(key, window, now)

            current_count = len(recent)
            if current_count >= limit:
                return False, 0

            recent.append(now)
            self._requests[key] = recent
            return True, limit - current_count - 1

    def get_retry_after_ms(self, key: str, window: int) -> int:
        """Milliseconds until the oldest request in the window expires."""
        with self._lock:
            now = time.time()
            recent = self._clean_old_requests(key, window, now)
            if not recent:
                return 0
            return max(0, int(round((window - (now - min(recent))) * 1000)))

    def reset(self):
        with self._lock:
            self._requests.clear()
            self._last_sweep = 0.0

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._requests)


# Global rate limiter instance
rate_limiter = RateLimiter()


async def check_rate_limit(request: Request):
    """
    Rate limiting dependency.
    Limits requests per client IP address.
    """
    if not settings.rate_limit_requests:
        return  # Rate limiting disabled

    client_ip = request.client.host if request.client else "unknown"

    allowed, remaining = rate_limiter.is_allowed(
        key=client_ip,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
    )

    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_limit = settings.rate_limit_requests

    if not allowed:
        retry_after_ms = rate_limiter.get_retry_after_ms(client_ip, settings.rate_limit_window) or 1000
        logger.warning("Rate limit exceeded", client=client_ip, retry_after_ms=retry_after_ms)
        metrics.increment("ingress.rate_limited")
        raise RateLimitExceededError(retry_after_ms)
