"""
Fixed-window, in-process rate limiting for public API endpoints.

Counters live in worker memory, so limits are per gunicorn worker.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from threading import Lock
from typing import Any

from flask import Request, current_app, jsonify, request

_MAX_TRACKED_KEYS = 10_000


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: dict[str, _Window] = {}
        self._lock = Lock()

    def hit(self, key: str, now: float | None = None) -> RateLimitResult:
        now = time.time() if now is None else now
        with self._lock:
            if len(self._windows) > _MAX_TRACKED_KEYS:
                self._windows = {k: w for k, w in self._windows.items() if w.reset_at >= now}
            w = self._windows.get(key)
            if w is None or w.reset_at < now:
                w = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[key] = w
                return RateLimitResult(True, self.max_requests - 1, w.reset_at)
            if w.count >= self.max_requests:
                return RateLimitResult(False, 0, w.reset_at)
            w.count += 1
            return RateLimitResult(True, self.max_requests - w.count, w.reset_at)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def client_identifier(req: Request) -> str:
    """Peer address only; behind a proxy, ProxyFix (TRUST_PROXY_HOPS) rewrites remote_addr."""
    return f"ip:{req.remote_addr or 'unknown'}"


def _limiter() -> RateLimiter:
    limiter = current_app.extensions.get("api_rate_limiter")
    if limiter is None:
        limiter = RateLimiter(
            int(current_app.config.get("API_RATE_LIMIT") or 100),
            int(current_app.config.get("API_RATE_WINDOW") or 60),
        )
        current_app.extensions["api_rate_limiter"] = limiter
    return limiter


def rate_limited(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        limiter = _limiter()
        result = limiter.hit(client_identifier(request))
        headers = {
            "X-RateLimit-Limit": str(limiter.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_at)),
        }
        if not result.allowed:
            headers["Retry-After"] = str(max(1, int(result.reset_at - time.time())))
            resp = jsonify({"error": "Rate limit exceeded", "message": "Too many requests. Please try again later."})
            return resp, 429, headers
        rv = current_app.make_response(fn(*args, **kwargs))
        rv.headers.update(headers)
        return rv

    return wrapped
