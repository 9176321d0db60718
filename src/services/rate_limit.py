"""
Per-host request pacing shared by every outbound client.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict
from urllib.parse import urlparse

import requests

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Enforce a minimum gap between the end of one request and the start of the next.

    The limiter is a context manager: entering blocks until the interval has elapsed
    since the previous holder exited, exiting stamps the completion time. The lock
    is held for the whole request so callers sharing a limiter are serialized.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: float | None = None

    def wait(self) -> float:
        if self._last_request is None:
            return 0.0
        elapsed = self._clock() - self._last_request
        remaining = self.min_interval - elapsed
        if remaining > 0:
            LOGGER.debug("Rate limiter sleeping %.2fs", remaining)
            self._sleep(remaining)
            return remaining
        return 0.0

    def __enter__(self) -> "RateLimiter":
        self._lock.acquire()
        try:
            self.wait()
        except BaseException:
            self._lock.release()
            raise
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._last_request = self._clock()
        self._lock.release()


_REGISTRY: Dict[str, RateLimiter] = {}
_REGISTRY_LOCK = threading.Lock()


def shared_limiter(key: str, min_interval: float) -> RateLimiter:
    """Return the process-wide limiter for `key`, creating it on first use."""
    with _REGISTRY_LOCK:
        limiter = _REGISTRY.get(key)
        if limiter is None:
            limiter = RateLimiter(min_interval)
            _REGISTRY[key] = limiter
        elif min_interval > limiter.min_interval:
            limiter.min_interval = min_interval
        return limiter


def host_key(url: str) -> str:
    return urlparse(url).netloc.lower()


class RateLimitedSession:
    """Route `get`/`post` through a limiter, per host unless one limiter is pinned."""

    def __init__(
        self,
        session: requests.Session | Any | None = None,
        min_interval: float = 1.0,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.min_interval = min_interval
        self.limiter = limiter

    def _limiter_for(self, url: str) -> RateLimiter:
        if self.limiter is not None:
            return self.limiter
        return shared_limiter(host_key(url), self.min_interval)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        with self._limiter_for(url):
            return self.session.get(url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        with self._limiter_for(url):
            return self.session.post(url, **kwargs)
