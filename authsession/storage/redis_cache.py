from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError


class RedisCache:
    """Thin Redis wrapper for rate windows, OAuth state and 2FA lockout."""

    # Sliding window log: one sorted-set member per admitted request
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_ms = window_ms
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window_ms - now_ms
  end
  return {0, 0, math.max(1, math.ceil(retry_ms / 1000))}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
return {1, limit - count - 1, 0}
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the subject so client-supplied IPs cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Admit one request into the sliding window for ``key``.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        safe_key = self._normalize_rate_key(key)
        now_ms = int(time.time() * 1000)
        allowed, remaining, retry_after = await self._sliding_window(
            keys=[safe_key],
            args=[now_ms, window_seconds * 1000, limit, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after)

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically read and delete an OAuth state so it is consumed once."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None
        return data.get("provider"), expires_at

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed code and trigger lockout once ``max_attempts`` is hit.

        Returns:
            Tuple of (is_now_locked_out, current_attempts)
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.aclose()
