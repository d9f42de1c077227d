import logging
import time
from typing import Callable

from kv_store import STORE_ERRORS, ceil_seconds

logger = logging.getLogger("security")

RATE_LIMIT_NOTIFICATION_PREFIX = "rate_limit_notification:"
SECURITY_NOTIFICATION_PREFIX = "security_notification:"


class NotificationThrottle:
    """
    Per-IP alert cooldown

    Fails open toward alerting: if the store is unreachable ``should_notify``
    answers True, so an outage may cause a duplicate alert but never a
    silent one.
    """

    def __init__(self, redis, key_prefix: str, cooldown: float = 24 * 60 * 60,
                 clock: Callable[[], float] = time.time):
        self.redis = redis
        self.key_prefix = key_prefix
        self.cooldown = cooldown
        self.clock = clock

    def key(self, ip: str) -> str:
        return f"{self.key_prefix}{ip}"

    async def should_notify(self, ip: str) -> bool:
        key = self.key(ip)
        now = self.clock()
        ttl = ceil_seconds(self.cooldown)
        try:
            if await self.redis.set(key, repr(now), ex=ttl, nx=True):
                return True

            last = await self.redis.get(key)
            try:
                stale = last is None or now - float(last) > self.cooldown
            except ValueError:
                stale = True
            if stale:
                await self.redis.set(key, repr(now), ex=ttl)
                return True
            return False
        except STORE_ERRORS as e:
            logger.error(f"Store error in should_notify({ip}): {e}")
            return True
