"""
Sliding-window rate limiter.

- Keyed by an opaque caller identifier (``payment:<user_id>``, client IP, ...).
- Each key owns a log of admission timestamps (epoch ms). Entries older than
  the window are pruned lazily on every check.
- Logs live in a RequestLogStore. The in-memory store is per-process; the
  Redis store (planpilot.core.ratelimit_redis) is shared across workers.
- RateLimitSweeper drops idle keys on an interval so one-shot callers do not
  grow the map forever.
"""

import asyncio
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from planpilot.core.errors import InvalidRateLimitConfig, RateLimitError


logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class RateLimitDecision:
    success: bool
    limit: int
    remaining: int
    # Epoch ms. On rejection: when the oldest retained entry expires.
    # On admission: when the entry just recorded expires.
    reset_time: int

    def retry_after_seconds(self, now: int) -> int:
        return max(1, math.ceil((self.reset_time - now) / 1000))

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
        }


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_ms: int

    def __post_init__(self):
        validate_limits(self.max_requests, self.window_ms)


def _require_positive_int(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRateLimitConfig(f"{name} must be a positive integer, got {value!r}")


def validate_limits(max_requests: int, window_ms: int) -> None:
    _require_positive_int("max_requests", max_requests)
    _require_positive_int("window_ms", window_ms)


def evaluate_log(timestamps: Deque[int], now: int, max_requests: int, window_ms: int) -> RateLimitDecision:
    """Prune, compare and append in place.

    The caller must hold whatever lock guards ``timestamps``.
    """
    window_start = now - window_ms
    while timestamps and timestamps[0] <= window_start:
        timestamps.popleft()

    if len(timestamps) >= max_requests:
        return RateLimitDecision(
            success=False,
            limit=max_requests,
            remaining=0,
            reset_time=timestamps[0] + window_ms,
        )

    # Keep the log non-decreasing even if the wall clock steps backwards.
    entry = max(now, timestamps[-1]) if timestamps else now
    timestamps.append(entry)
    return RateLimitDecision(
        success=True,
        limit=max_requests,
        remaining=max_requests - len(timestamps),
        reset_time=entry + window_ms,
    )


class RequestLogStore(ABC):
    """Storage for per-key request logs.

    ``hit`` must perform read-prune-compare-append atomically per key.
    """

    @abstractmethod
    def hit(self, key: str, now: int, max_requests: int, window_ms: int) -> RateLimitDecision:
        ...

    @abstractmethod
    def sweep(self, now: int, grace_ms: int) -> int:
        """Remove keys idle for at least ``grace_ms``. Returns keys removed."""
        ...

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        ...

    def close(self) -> None:
        pass


class _KeyLog:
    __slots__ = ("lock", "timestamps", "window_ms", "created_at", "retired")

    def __init__(self, created_at: int):
        self.lock = threading.Lock()
        self.timestamps: Deque[int] = deque()
        self.window_ms = 0
        self.created_at = created_at
        self.retired = False

    def idle_since(self) -> int:
        if self.timestamps:
            return self.timestamps[-1] + self.window_ms
        return self.created_at


class InMemoryRequestLogStore(RequestLogStore):
    """Process-local store.

    One lock per key serializes checks on that key; the map lock is held only
    to look up, create or drop a key, so different keys never wait on each
    other's read-modify-write.
    """

    def __init__(self):
        self._logs: Dict[str, _KeyLog] = {}
        self._map_lock = threading.Lock()

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._logs)

    def __contains__(self, key: str) -> bool:
        with self._map_lock:
            return key in self._logs

    def _log_for(self, key: str, now: int) -> _KeyLog:
        with self._map_lock:
            log = self._logs.get(key)
            if log is None:
                log = _KeyLog(created_at=now)
                self._logs[key] = log
            return log

    def hit(self, key: str, now: int, max_requests: int, window_ms: int) -> RateLimitDecision:
        while True:
            log = self._log_for(key, now)
            with log.lock:
                if log.retired:
                    # Swept between lookup and lock; pick up the fresh log.
                    continue
                log.window_ms = window_ms
                return evaluate_log(log.timestamps, now, max_requests, window_ms)

    def entries(self, key: str) -> list:
        with self._map_lock:
            log = self._logs.get(key)
        if log is None:
            return []
        with log.lock:
            return list(log.timestamps)

    def sweep(self, now: int, grace_ms: int) -> int:
        with self._map_lock:
            snapshot = list(self._logs.items())

        removed = 0
        for key, log in snapshot:
            with log.lock:
                if log.retired:
                    continue
                idle_since = log.idle_since()
                window_start = now - log.window_ms
                while log.timestamps and log.timestamps[0] <= window_start:
                    log.timestamps.popleft()
                if log.timestamps:
                    continue
                if now - idle_since < grace_ms:
                    continue
                log.retired = True
                with self._map_lock:
                    if self._logs.get(key) is log:
                        del self._logs[key]
                removed += 1
        return removed

    def reset(self, key: Optional[str] = None) -> None:
        with self._map_lock:
            if key is None:
                logs = list(self._logs.values())
                self._logs.clear()
            else:
                log = self._logs.pop(key, None)
                logs = [log] if log else []
        for log in logs:
            with log.lock:
                log.retired = True


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` per key within a trailing ``window_ms``."""

    def __init__(self, store: Optional[RequestLogStore] = None, time_fn: Callable[[], int] = now_ms):
        self.store = store if store is not None else InMemoryRequestLogStore()
        self.time_fn = time_fn

    def now(self) -> int:
        return int(self.time_fn())

    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitDecision:
        validate_limits(max_requests, window_ms)
        now = self.now()
        decision = self.store.hit(key, now, max_requests, window_ms)
        if not decision.success:
            logger.warning(
                "[ratelimit] BLOCK",
                extra={
                    "rate_limit_key": key,
                    "limit": max_requests,
                    "window_ms": window_ms,
                    "reset_time": decision.reset_time,
                },
            )
        return decision

    def check_policy(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        return self.check(key, policy.max_requests, policy.window_ms)

    def enforce(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Like check_policy, but raise RateLimitError on rejection."""
        decision = self.check_policy(key, policy)
        if decision.success:
            return decision
        raise RateLimitError(
            f"Rate limit exceeded for {policy.name}. Please wait before making another request.",
            limit=decision.limit,
            reset_time_ms=decision.reset_time,
            retry_after_s=decision.retry_after_seconds(self.now()),
        )


class RateLimitSweeper:
    """Background task that periodically drops idle keys from a store.

    Owned by the application lifespan: ``start()`` on startup, ``await stop()``
    on shutdown.
    """

    def __init__(
        self,
        store: RequestLogStore,
        *,
        interval_ms: int,
        grace_ms: int,
        time_fn: Callable[[], int] = now_ms,
    ):
        _require_positive_int("interval_ms", interval_ms)
        _require_positive_int("grace_ms", grace_ms)
        self.store = store
        self.interval_ms = interval_ms
        self.grace_ms = grace_ms
        self.time_fn = time_fn
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> int:
        removed = self.store.sweep(int(self.time_fn()), self.grace_ms)
        if removed:
            logger.info("[ratelimit] swept idle keys", extra={"removed": removed})
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            try:
                self.sweep_once()
            except Exception:
                logger.exception("[ratelimit] sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="ratelimit-sweeper")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def build_rate_limit_policies(settings_obj) -> Dict[str, RateLimitPolicy]:
    """Named policies for guarded actions. Invalid numbers fail at startup."""
    return {
        "payment": RateLimitPolicy(
            name="payment",
            max_requests=settings_obj.PAYMENT_RATE_LIMIT_MAX,
            window_ms=settings_obj.PAYMENT_RATE_LIMIT_WINDOW_MS,
        ),
        "generation": RateLimitPolicy(
            name="generation",
            max_requests=settings_obj.GENERATION_RATE_LIMIT_MAX,
            window_ms=settings_obj.GENERATION_RATE_LIMIT_WINDOW_MS,
        ),
    }


def build_request_log_store(settings_obj) -> RequestLogStore:
    backend = str(settings_obj.RATE_LIMIT_BACKEND).lower()
    if backend == "memory":
        return InMemoryRequestLogStore()
    if backend == "redis":
        from planpilot.core.ratelimit_redis import RedisRequestLogStore

        return RedisRequestLogStore.from_url(settings_obj.REDIS_URL)
    raise InvalidRateLimitConfig(f"Unknown RATE_LIMIT_BACKEND: {settings_obj.RATE_LIMIT_BACKEND!r}")
