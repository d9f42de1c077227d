"""
Fixed-window rate limiter

One counter per identity (``ip`` or ``ip-principal``) that lives for one
window. The request that goes over quota blocks the IP in the overuse block
store; the alert mail leg runs in the background.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from background import BackgroundTasks
from ip_block_store import BlockRecord, IPBlockStore
from kv_store import STORE_ERRORS
from notification_throttle import NotificationThrottle

logger = logging.getLogger("rate_limit")

RATE_LIMIT_PREFIX = "rate_limit:"


def rate_limit_identity(ip: str, principal_id=None) -> str:
    """Authenticated traffic gets its own window, apart from anonymous traffic on the same IP."""
    return f"{ip}-{principal_id}" if principal_id else ip


@dataclass
class RateLimitResult:
    allowed: bool
    total_hits: int
    limit: int
    reset_time: float
    identity: str

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.total_hits)

    def headers(self, now: float) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(0, math.ceil(self.reset_time - now))),
        }


class RateLimiter:
    """
    Rate limiter backed by ``INCR`` + ``EXPIRE``

    A store error lets the request through (fail open).
    """

    def __init__(self, redis, block_store: IPBlockStore,
                 throttle: Optional[NotificationThrottle] = None, mailer=None,
                 window: int = 30, max_requests: int = 60,
                 clock: Callable[[], float] = time.time,
                 tasks: Optional[BackgroundTasks] = None,
                 key_prefix: str = RATE_LIMIT_PREFIX):
        self.redis = redis
        self.block_store = block_store
        self.throttle = throttle
        self.mailer = mailer
        self.window = window
        self.max_requests = max_requests
        self.clock = clock
        self.tasks = tasks or BackgroundTasks("rate_limit")
        self.key_prefix = key_prefix

    def key(self, identity: str) -> str:
        return f"{self.key_prefix}{identity}"

    async def increment(self, identity: str):
        """Count one hit; returns ``(total_hits, reset_time)``."""
        key = self.key(identity)
        now = self.clock()
        try:
            current = await self.redis.incr(key)
            if current == 1:
                await self.redis.expire(key, self.window)
                return current, now + self.window
            ttl = await self.redis.ttl(key)
            if ttl < 0:
                # counter survived without a TTL (crash between INCR and EXPIRE)
                await self.redis.expire(key, self.window)
                ttl = self.window
            return current, now + ttl
        except STORE_ERRORS as e:
            logger.error(f"Store error in rate limit increment({identity}): {e}")
            return 1, now + self.window

    async def decrement(self, identity: str):
        try:
            await self.redis.decr(self.key(identity))
        except STORE_ERRORS as e:
            logger.error(f"Store error in rate limit decrement({identity}): {e}")

    async def reset(self, identity: str):
        try:
            await self.redis.delete(self.key(identity))
        except STORE_ERRORS as e:
            logger.error(f"Store error in rate limit reset({identity}): {e}")

    async def check(self, ip: str, principal_id=None, endpoint: str = "",
                    user_agent: str = "") -> RateLimitResult:
        identity = rate_limit_identity(ip, principal_id)
        total_hits, reset_time = await self.increment(identity)
        result = RateLimitResult(
            allowed=total_hits <= self.max_requests,
            total_hits=total_hits,
            limit=self.max_requests,
            reset_time=reset_time,
            identity=identity,
        )
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for IP: {ip} identity={identity} "
                           f"hits={total_hits} endpoint={endpoint} ua={user_agent!r}")
            await self._on_violation(ip, total_hits, endpoint, user_agent)
        return result

    async def _on_violation(self, ip: str, total_hits: int, endpoint: str, user_agent: str):
        try:
            record = await self.block_store.block(ip, "rate_limit", "medium")
        except STORE_ERRORS as e:
            logger.error(f"Failed to block IP {ip} after rate limit violation: {e}")
            return
        self.tasks.spawn(self._notify(ip, record, total_hits, endpoint, user_agent))

    async def _notify(self, ip: str, record: BlockRecord, total_hits: int,
                      endpoint: str, user_agent: str):
        if self.throttle is None:
            return
        if not await self.throttle.should_notify(ip) or record.notified:
            return
        if self.mailer is not None:
            block_hours = self.block_store.block_duration(record.attempts) / 3600
            await self.mailer.send_rate_limit_alert(ip, endpoint, total_hits, user_agent, block_hours)
        await self.block_store.mark_notified(ip)
