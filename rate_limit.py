"""
Windowed attempt counting for abuse-prone routes.

Counters live in a CounterStore. The in-memory store is per process, so
several API instances each keep their own counts; a shared store (e.g. a
cache server) can be plugged in by assigning `rate_limit.store`.
"""

import logging
import threading
import time
from typing import Callable, Dict, Tuple

from fastapi import Request

from errors import RateLimitError

logger = logging.getLogger(__name__)


class CounterStore:
    def increment(self, key: str, window_seconds: int) -> int:
        raise NotImplementedError

    def reset(self, key: str):
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError


class MemoryCounterStore(CounterStore):
    def __init__(self):
        self._counters: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int) -> int:
        now = time.time()
        with self._lock:
            started, count = self._counters.get(key, (now, 0))
            if now - started >= window_seconds:
                started, count = now, 0
            count += 1
            self._counters[key] = (started, count)
            return count

    def reset(self, key: str):
        with self._lock:
            self._counters.pop(key, None)

    def clear(self):
        with self._lock:
            self._counters.clear()


store: CounterStore = MemoryCounterStore()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def ip_and_agent(request: Request) -> str:
    return f"{client_ip(request)}-{request.headers.get('user-agent', 'unknown')}"


class RateLimiter:
    """FastAPI dependency counting one attempt per request."""

    def __init__(self, name: str, max_attempts: int, window_seconds: int, message: str,
                 key_func: Callable[[Request], str] = client_ip):
        self.name = name
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.message = message
        self.key_func = key_func

    def hit(self, identifier: str):
        count = store.increment(f"{self.name}:{identifier}", self.window_seconds)
        if count > self.max_attempts:
            logger.warning(f"Rate limit '{self.name}' exceeded ({count}/{self.max_attempts})")
            raise RateLimitError(self.message)

    def reset(self, identifier: str):
        store.reset(f"{self.name}:{identifier}")

    def __call__(self, request: Request):
        self.hit(self.key_func(request))


FIFTEEN_MINUTES = 15 * 60

booking_limiter = RateLimiter(
    "booking", 10, FIFTEEN_MINUTES,
    "Too many booking attempts. Please wait before trying again.",
    key_func=ip_and_agent,
)
admin_limiter = RateLimiter("admin", 100, 5 * 60, "Too many admin requests. Please slow down.")
contact_limiter = RateLimiter(
    "contact", 5, FIFTEEN_MINUTES, "Too many contact form submissions. Please try again later."
)
signup_limiter = RateLimiter("signup", 5, FIFTEEN_MINUTES, "Too many signup attempts. Please try again later.")
login_limiter = RateLimiter("login", 5, FIFTEEN_MINUTES, "Too many sign-in attempts. Please try again later.")
reset_limiter = RateLimiter(
    "reset-password", 5, FIFTEEN_MINUTES, "Too many password reset attempts. Please try again later."
)
forgot_password_limiter = RateLimiter(
    "forgot-password", 3, FIFTEEN_MINUTES, "Too many password reset requests. Please try again later."
)


def reset_all():
    store.clear()
