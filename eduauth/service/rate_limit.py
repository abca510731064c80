from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from eduauth.logging import get_logger
from eduauth.service.errors import RateLimitedError
from eduauth.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateRule:
    limit: int
    window_seconds: int
    message: str = "Too many requests. Please try again later."


HOUR = 60 * 60

# action -> rule; counters live at "{action}:{actor}"
RATE_LIMITS: Dict[str, RateRule] = {
    "register": RateRule(5, HOUR, "Too many registration attempts. Please try again later."),
    "login": RateRule(10, HOUR, "Too many login attempts. Please try again later."),
    "verify": RateRule(15, HOUR, "Too many verification attempts. Please try again later."),
    "password_reset": RateRule(5, HOUR, "Too many password reset requests. Please try again later."),
    "password_reset_email": RateRule(3, HOUR, "Too many password reset requests for this email."),
    "password_reset_verify": RateRule(10, HOUR, "Too many password reset attempts. Please try again later."),
    "otp_issue": RateRule(3, 60, "Please wait before requesting another code."),
    "otp_resend": RateRule(5, HOUR, "Too many OTP requests. Please try again later."),
    "otp_status": RateRule(20, HOUR),
    "auth_code_exchange": RateRule(10, 600, "Too many code exchange attempts."),
    "get_sessions": RateRule(20, HOUR),
    "invalidate_sessions": RateRule(5, HOUR, "Too many session invalidation requests."),
    "reactivation_request": RateRule(3, HOUR, "Too many reactivation requests. Please try again later."),
    "reactivation_status": RateRule(10, HOUR),
    "account_deletion": RateRule(2, 24 * HOUR, "Too many account deletion attempts."),
}


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Fixed-window counters keyed by ``(action, actor)``.

    The first hit creates the counter with the window as its TTL; later hits
    increment it. Windows do not slide, so a burst straddling a boundary can admit
    up to twice the nominal rate. When the cache is unreachable the same windows
    are kept in process memory.
    """

    def __init__(
        self,
        cache,
        *,
        rules: Optional[Dict[str, RateRule]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.rules = dict(rules or RATE_LIMITS)
        self.clock = clock
        self._local: Dict[str, Tuple[int, float]] = {}
        self._local_lock = threading.Lock()

    @staticmethod
    def key(action: str, actor: str) -> str:
        return f"{action}:{actor}"

    def _local_hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self.clock()
        with self._local_lock:
            count, window_end = self._local.get(key, (0, 0.0))
            if window_end <= now:
                count, window_end = 0, now + window_seconds
            count += 1
            self._local[key] = (count, window_end)
        return count, max(1, int(window_end - now))

    async def hit(
        self,
        action: str,
        actor: str,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateDecision:
        rule = self.rules.get(action)
        if rule is None and (limit is None or window_seconds is None):
            raise KeyError(f"no rate rule for action {action!r}")
        limit = limit if limit is not None else rule.limit
        window_seconds = window_seconds if window_seconds is not None else rule.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window", action=action, window_seconds=window_seconds
            )
            window_seconds = 60
        key = self.key(action, actor)
        if self.cache is not None:
            try:
                count, ttl = await self.cache.hit_window(key, window_seconds)
            except CACHE_ERRORS as exc:
                logger.warning(
                    "rate_limit_cache_unavailable", action=action, error=str(exc)
                )
                count, ttl = self._local_hit(key, window_seconds)
        else:
            count, ttl = self._local_hit(key, window_seconds)
        return RateDecision(
            allowed=count <= limit, count=count, limit=limit, retry_after=ttl
        )

    async def enforce(self, action: str, actor: str) -> RateDecision:
        decision = await self.hit(action, actor)
        if not decision.allowed:
            rule = self.rules[action]
            logger.warning(
                "rate_limit_exceeded",
                action=action,
                count=decision.count,
                limit=decision.limit,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(rule.message, retry_after=decision.retry_after)
        return decision

    async def reset(self, action: str, actor: str) -> None:
        key = self.key(action, actor)
        with self._local_lock:
            self._local.pop(key, None)
        if self.cache is not None:
            try:
                await self.cache.delete(key)
            except CACHE_ERRORS as exc:
                logger.warning("rate_limit_reset_failed", action=action, error=str(exc))
