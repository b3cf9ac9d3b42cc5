from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import RateLimitedError
from authsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SWEEP_INTERVAL_SECONDS = 60


class RateLimitClass(str, Enum):
    GLOBAL = "global"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    OAUTH = "oauth"


_MESSAGES = {
    RateLimitClass.GLOBAL: "Too many requests, please try again later.",
    RateLimitClass.LOGIN: "Too many login attempts. Please try again after a minute.",
    RateLimitClass.PASSWORD_RESET: "Too many password reset requests. Please try again later.",
    RateLimitClass.OAUTH: "Too many OAuth attempts. Please try again later.",
}


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Sliding-window limits per (client IP, endpoint class).

    Redis holds the windows when configured; otherwise each process keeps
    its own timestamp deques. State need not survive a restart.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._lock = asyncio.Lock()
        self._windows: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def policy(self, limit_class: RateLimitClass) -> Tuple[int, int]:
        """``(limit, window_seconds)`` for a class."""
        s = self.settings
        return {
            RateLimitClass.GLOBAL: (s.rate_limit_global, s.rate_limit_global_window_seconds),
            RateLimitClass.LOGIN: (s.rate_limit_login, s.rate_limit_login_window_seconds),
            RateLimitClass.PASSWORD_RESET: (
                s.rate_limit_password_reset,
                s.rate_limit_password_reset_window_seconds,
            ),
            RateLimitClass.OAUTH: (s.rate_limit_oauth, s.rate_limit_oauth_window_seconds),
        }[RateLimitClass(limit_class)]

    async def hit(self, limit_class: RateLimitClass, client_ip: str) -> RateLimitDecision:
        """Count one request and report whether it fits in the window."""
        limit_class = RateLimitClass(limit_class)
        limit, window_seconds = self.policy(limit_class)
        if limit <= 0:
            return RateLimitDecision(allowed=True, limit=limit, remaining=limit)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", limit_class=limit_class.value)
            window_seconds = 60
        key = f"{limit_class.value}:{client_ip or 'unknown'}"

        if self.cache:
            allowed, remaining, retry_after = await self.cache.check_rate_limit(
                key, limit, window_seconds
            )
            return RateLimitDecision(allowed, limit, remaining, retry_after)

        now = self._clock()
        async with self._lock:
            self._maybe_sweep(now)
            window = self._windows.setdefault(key, deque())
            cutoff = now - window_seconds
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= limit:
                retry_after = max(1, math.ceil(window[0] + window_seconds - now))
                return RateLimitDecision(False, limit, 0, retry_after)
            window.append(now)
            return RateLimitDecision(True, limit, limit - len(window))

    def _maybe_sweep(self, now: float) -> int:
        """Drop windows whose entries have all aged out, at most once per interval.

        Returns the number of keys removed.
        """
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return 0
        self._last_sweep = now
        stale = []
        for key, window in self._windows.items():
            window_seconds = self.policy(RateLimitClass(key.split(":", 1)[0]))[1]
            if window_seconds <= 0:
                window_seconds = 60
            if not window or window[-1] <= now - window_seconds:
                stale.append(key)
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug("rate_limit_windows_swept", removed=len(stale))
        return len(stale)

    async def enforce(self, limit_class: RateLimitClass, client_ip: str) -> RateLimitDecision:
        """Like ``hit`` but raises once the window is full.

        Raises:
            RateLimitedError: Limit exceeded; carries ``retry_after`` seconds
        """
        decision = await self.hit(limit_class, client_ip)
        if not decision.allowed:
            logger.warning(
                "rate_limited",
                limit_class=RateLimitClass(limit_class).value,
                client_ip=client_ip,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                _MESSAGES[RateLimitClass(limit_class)],
                retry_after=decision.retry_after,
                limit=decision.limit,
            )
        return decision

    def reset(self) -> None:
        self._windows.clear()
