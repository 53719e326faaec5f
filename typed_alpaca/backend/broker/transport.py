# typed_alpaca/backend/broker/transport.py
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from loguru import logger

from typed_alpaca.backend.errors import (
    BrokerAuthError,
    BrokerHttpError,
    BrokerNetworkError,
    BrokerRateLimitError,
    MalformedEntityError,
)
from typed_alpaca.domain.interfaces import HttpTransport, RateLimiter


def http_error(status: int, body: Any) -> BrokerHttpError:
    """Map a non-2xx response to the matching BrokerHttpError subclass."""
    msg = body.get("message") if isinstance(body, dict) else body
    text = f"HTTP {status}: {msg}"
    if status in (401, 403):
        return BrokerAuthError(f"Auth error: {text}", status_code=status, body=body)
    if status == 429:
        return BrokerRateLimitError(f"Rate limit: {text}", status_code=status, body=body)
    return BrokerHttpError(text, status_code=status, body=body)


class RequestsTransport(HttpTransport):
    """HttpTransport over a pooled requests.Session. No retries: errors go straight to the caller."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self._session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            resp = self._session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise BrokerNetworkError(f"Network error: {e.__class__.__name__}: {e}") from e

        logger.debug("{} {} -> {}", method, url, resp.status_code)
        if not resp.ok:
            try:
                body: Any = resp.json()
            except ValueError:
                body = resp.text
            raise http_error(resp.status_code, body)

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedEntityError(f"{method} {url}: response body is not JSON") from e

    def close(self) -> None:
        self._session.close()


class TokenBucketLimiter(RateLimiter):
    """
    Token bucket sized to the per-minute quota. acquire() blocks until a token is free.
    Thread-safe, so one client can be shared between threads.
    """

    def __init__(
        self,
        max_per_minute: int = 200,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_per_minute <= 0:
            raise ValueError("max_per_minute must be > 0")
        self.capacity = float(max_per_minute)
        self.rate = max_per_minute / 60.0  # tokens per second
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def acquire(self) -> None:
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait = (1.0 - self._tokens) / self.rate
            logger.debug("Rate limit reached, waiting {:.2f}s", wait)
            self._sleep(wait)
