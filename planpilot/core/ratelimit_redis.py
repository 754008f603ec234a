"""
Redis-backed request log store.

One sorted set per key (score = admission time in ms). A Lua script performs
prune, count, compare and append in one round trip, so concurrent workers
sharing the Redis instance see a single global count per key.
"""

from typing import Optional
from uuid import uuid4

from redis import Redis

from planpilot.core.ratelimit import RateLimitDecision, RequestLogStore


KEY_PREFIX = "planpilot:ratelimit:"

_HIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_requests = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window_ms)
local count = redis.call('ZCARD', key)
if count >= max_requests then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {0, count, tonumber(oldest[2]) + window_ms}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window_ms)
return {1, count + 1, now + window_ms}
"""


class RedisRequestLogStore(RequestLogStore):
    def __init__(self, client: Redis, *, prefix: str = KEY_PREFIX):
        self.client = client
        self.prefix = prefix
        self._hit = client.register_script(_HIT_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRequestLogStore":
        return cls(Redis.from_url(url), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def hit(self, key: str, now: int, max_requests: int, window_ms: int) -> RateLimitDecision:
        member = f"{now}-{uuid4().hex}"
        admitted, count, reset_time = self._hit(
            keys=[self._key(key)],
            args=[now, max_requests, window_ms, member],
        )
        admitted = bool(int(admitted))
        return RateLimitDecision(
            success=admitted,
            limit=max_requests,
            remaining=max(0, max_requests - int(count)) if admitted else 0,
            reset_time=int(reset_time),
        )

    def sweep(self, now: int, grace_ms: int) -> int:
        # Keys carry a PEXPIRE of one window; Redis reclaims them itself.
        return 0

    def reset(self, key: Optional[str] = None) -> None:
        if key is not None:
            self.client.delete(self._key(key))
            return
        for found in self.client.scan_iter(match=f"{self.prefix}*"):
            self.client.delete(found)

    def close(self) -> None:
        self.client.close()
