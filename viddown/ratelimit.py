"""Per-client token-bucket throttling.

Each client identity gets a bucket refilled at ``requests_per_minute``
tokens per minute with a burst capacity of the same size. Buckets are
created on first sight and evicted by a periodic sweep once idle.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from .errors import RateLimited, message_for, negotiate_locale

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60.0
IDLE_AFTER = 3 * SWEEP_INTERVAL


def client_identity(forwarded_for: Optional[str], remote_addr: str) -> str:
    """Derive the rate-limit identity for a request.

    The left-most X-Forwarded-For hop wins over the peer address. A trailing
    port is stripped unless the address has several colons (IPv6).
    """
    address = remote_addr or ""
    if forwarded_for and forwarded_for.strip():
        address = forwarded_for.split(",", 1)[0].strip()
    if address.count(":") == 1:
        address = address.rsplit(":", 1)[0]
    return address


class TokenBucket:
    def __init__(self, rate: float, capacity: float, now: float) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self.updated = now
        self.last_seen = now
        self._lock = threading.Lock()

    def take(self, now: float) -> bool:
        with self._lock:
            elapsed = max(now - self.updated, 0.0)
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.updated = now
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False


class RateLimiter:
    def __init__(
        self,
        requests_per_minute: int,
        *,
        sweep_interval: float = SWEEP_INTERVAL,
        idle_after: float = IDLE_AFTER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.requests_per_minute = requests_per_minute
        self.sweep_interval = sweep_interval
        self.idle_after = idle_after
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._buckets

    def _bucket(self, identity: str, now: float) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = TokenBucket(self.requests_per_minute / 60.0, float(self.requests_per_minute), now)
                self._buckets[identity] = bucket
            bucket.last_seen = now
            return bucket

    def allow(self, identity: str) -> bool:
        now = self._clock()
        return self._bucket(identity, now).take(now)

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop buckets idle for longer than ``idle_after``; returns how many."""
        now = self._clock() if now is None else now
        with self._lock:
            stale = [key for key, bucket in self._buckets.items() if now - bucket.last_seen > self.idle_after]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Evicted %d idle rate-limit buckets", len(stale))
        return len(stale)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start_sweeper(self) -> None:
        if not self.sweeper_running:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class RateLimitMiddleware:
    """ASGI middleware answering 429 once a client's bucket is empty."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        exempt_paths: Iterable[str] = ("/", "/api/health"),
        default_locale: str = "en",
    ) -> None:
        self.app = app
        self.limiter = limiter
        self.exempt_paths = frozenset(exempt_paths)
        self.default_locale = default_locale

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers: Dict[str, str] = {}
        for key, value in scope.get("headers", []):
            # first occurrence wins for repeated headers
            headers.setdefault(key.decode("latin-1").lower(), value.decode("latin-1"))
        client = scope.get("client")
        remote = client[0] if client else ""
        identity = client_identity(headers.get("x-forwarded-for"), remote)

        if not self.limiter.allow(identity):
            logger.warning("Rate limit exceeded for %s on %s", identity, scope.get("path"))
            error = RateLimited()
            locale = negotiate_locale(headers.get("accept-language"), self.default_locale)
            response = JSONResponse(
                {"error": message_for(error.code, locale)},
                status_code=error.status_code,
                headers=error.headers,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
