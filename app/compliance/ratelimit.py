"""
In-process rate limiters.

Both limiters are created once by create_app() and kept in app.extensions;
callers only go through wait()/check(). State lives in this process: it does
not survive a restart and is not shared between instances, so a multi-instance
deployment needs a shared counter to keep these guarantees.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from functools import wraps
from typing import Any

from flask import current_app, g, request

from app.compliance.errors import RateLimitError


class MinIntervalRateLimiter:
    """
    Enforces a minimum delay between consecutive calls, measured from the
    completion of the previous call.
    """

    def __init__(
        self,
        min_delay_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_delay_seconds = max(0.0, float(min_delay_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_completed: float | None = None

    def wait(self) -> float:
        """Block until the delay since the last completed call has elapsed. Returns seconds slept."""
        self._lock.acquire()
        try:
            if self._last_completed is None:
                return 0.0
            remaining = self.min_delay_seconds - (self._clock() - self._last_completed)
            if remaining > 0:
                self._sleep(remaining)
                return remaining
            return 0.0
        except BaseException:
            self._lock.release()
            raise

    def release(self) -> None:
        """Mark the guarded call as completed."""
        self._last_completed = self._clock()
        self._lock.release()

    def __enter__(self) -> "MinIntervalRateLimiter":
        self.wait()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class SlidingWindowRateLimiter:
    """
    At most `max_calls` per `window_seconds` per key.
    check() records the call when allowed and raises RateLimitError otherwise.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = int(max_calls)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: dict[str, deque[float]] = {}
        self._last_sweep: float | None = None

    def tracked_keys(self) -> int:
        """Number of keys currently tracked."""
        with self._lock:
            return len(self._calls)

    def _prune(self, key: str, now: float) -> deque[float]:
        calls = self._calls.get(key)
        if calls is None:
            return deque()
        cutoff = now - self.window_seconds
        while calls and calls[0] <= cutoff:
            calls.popleft()
        if not calls:
            del self._calls[key]
        return calls

    def _sweep(self, now: float) -> None:
        # At most once per window: drop keys whose newest call has expired.
        if self._last_sweep is not None and now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        cutoff = now - self.window_seconds
        for key in [k for k, calls in self._calls.items() if not calls or calls[-1] <= cutoff]:
            del self._calls[key]

    def retry_after(self, key: str) -> float | None:
        """Seconds until `key` may call again, or None if it may call now."""
        with self._lock:
            now = self._clock()
            calls = self._prune(key, now)
            if len(calls) < self.max_calls:
                return None
            return calls[0] + self.window_seconds - now

    def check(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            calls = self._prune(key, now)
            if len(calls) >= self.max_calls:
                retry_after = calls[0] + self.window_seconds - now
                raise RateLimitError(
                    f"Rate limit exceeded ({self.max_calls} per {int(self.window_seconds)}s).",
                    retry_after=retry_after,
                )
            calls.append(now)
            self._calls[key] = calls

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._calls.clear()
            else:
                self._calls.pop(key, None)


def init_rate_limiters(app) -> None:
    """Create the process-wide limiters. Called once from create_app()."""
    app.extensions["audit_sync_rate_limiter"] = MinIntervalRateLimiter(
        int(app.config.get("AUDIT_SYNC_MIN_DELAY_MS", 100)) / 1000.0
    )
    app.extensions["reindex_rate_limiter"] = SlidingWindowRateLimiter(
        int(app.config.get("REINDEX_MAX_PER_HOUR", 3)), 3600
    )
    app.extensions["request_rate_limiters"] = {
        "list": SlidingWindowRateLimiter(int(app.config.get("REQUEST_RATE_LIMIT_PER_MINUTE", 60)), 60),
        "remind": SlidingWindowRateLimiter(int(app.config.get("REMIND_MAX_PER_HOUR", 10)), 3600),
    }


def rate_limited(bucket: str, key_args: Iterable[str] = ()) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Request-level limiter keyed by tenant, user and the named view arguments."""
    key_args = tuple(key_args)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            limiter: SlidingWindowRateLimiter = current_app.extensions["request_rate_limiters"][bucket]
            caller = getattr(g, "caller", None)
            who = (caller.user_id or caller.role) if caller else (request.remote_addr or "unknown")
            tenant = caller.tenant_id if caller else "-"
            parts = [bucket, tenant, who] + [str(kwargs.get(a)) for a in key_args]
            limiter.check(":".join(parts))
            return fn(*args, **kwargs)

        return wrapped

    return decorator
