"""
IP block stores

Temporarily blocked IPs with escalating block windows. Two variants share
the escalation rule and the read contract:

- ``ThreatBlockStore``: blocks triggered by detected attacks (JSON record,
  read-modify-write; a concurrent duplicate block may undercount one attempt)
- ``OveruseBlockStore``: blocks triggered by rate-limit violations (hash
  record whose attempt counter is advanced with ``HINCRBY``)

Reads fail open: a store error reports the IP as not blocked.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from kv_store import STORE_ERRORS, ceil_seconds

logger = logging.getLogger("security")

THREAT_BLOCK_PREFIX = "secblock:"
OVERUSE_BLOCK_PREFIX = "rate_limit_block:"


@dataclass
class BlockRecord:
    """Stored block for one IP"""
    first_blocked_at: float
    expires_at: float
    attempts: int
    threat_type: str
    severity: str
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockRecord':
        return cls(
            first_blocked_at=float(data["first_blocked_at"]),
            expires_at=float(data["expires_at"]),
            attempts=int(data["attempts"]),
            threat_type=data.get("threat_type", ""),
            severity=data.get("severity", "medium"),
            notified=_as_bool(data.get("notified", False)),
        )


@dataclass
class BlockStatus:
    blocked: bool
    attempts: Optional[int] = None
    threat_type: Optional[str] = None
    severity: Optional[str] = None
    notified: Optional[bool] = None
    expires_at: Optional[float] = None

    @classmethod
    def from_record(cls, record: BlockRecord) -> 'BlockStatus':
        return cls(
            blocked=True,
            attempts=record.attempts,
            threat_type=record.threat_type,
            severity=record.severity,
            notified=record.notified,
            expires_at=record.expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.lower() in ("1", "true")
    return bool(value)


class IPBlockStore:
    """
    Base class: key layout, escalation rule and the fail-open read path

    Subclasses implement ``_load``, ``block`` and ``mark_notified``.
    """

    def __init__(self, redis, key_prefix: str, base_window: float,
                 escalation_cap: int = 5, clock: Callable[[], float] = time.time):
        self.redis = redis
        self.key_prefix = key_prefix
        self.base_window = base_window
        self.escalation_cap = escalation_cap
        self.clock = clock

    def key(self, ip: str) -> str:
        return f"{self.key_prefix}{ip}"

    def block_duration(self, attempts: int) -> float:
        """Base window times the repeat count, capped."""
        return self.base_window * min(max(attempts, 1), self.escalation_cap)

    async def _load(self, ip: str) -> Optional[BlockRecord]:
        raise NotImplementedError

    async def block(self, ip: str, threat_type: str, severity: str = "medium") -> BlockRecord:
        raise NotImplementedError

    async def mark_notified(self, ip: str):
        raise NotImplementedError

    async def is_blocked(self, ip: str) -> BlockStatus:
        try:
            record = await self._load(ip)
            if record is None:
                return BlockStatus(blocked=False)
            if self.clock() < record.expires_at:
                return BlockStatus.from_record(record)
            # expired but not evicted yet
            await self.redis.delete(self.key(ip))
            return BlockStatus(blocked=False)
        except STORE_ERRORS as e:
            logger.error(f"Store error in is_blocked({ip}) [{self.key_prefix}]: {e}")
            return BlockStatus(blocked=False)

    async def unblock(self, ip: str) -> bool:
        removed = await self.redis.delete(self.key(ip))
        if removed:
            logger.info(f"IP {ip} unblocked [{self.key_prefix}]")
        return bool(removed)

    def _log_block(self, ip: str, record: BlockRecord):
        logger.warning(
            f"IP blocked: {ip} [{self.key_prefix}] type={record.threat_type} "
            f"severity={record.severity} attempts={record.attempts} "
            f"for {int(record.expires_at - self.clock())}s"
        )


class ThreatBlockStore(IPBlockStore):
    """Blocks for detected attacks, stored as one JSON document per IP"""

    def __init__(self, redis, base_window: float = 2 * 60 * 60, escalation_cap: int = 5,
                 clock: Callable[[], float] = time.time, key_prefix: str = THREAT_BLOCK_PREFIX):
        super().__init__(redis, key_prefix, base_window, escalation_cap, clock)

    async def _load(self, ip: str) -> Optional[BlockRecord]:
        raw = await self.redis.get(self.key(ip))
        if not raw:
            return None
        try:
            return BlockRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt block record for {ip}, dropping it: {e}")
            await self.redis.delete(self.key(ip))
            return None

    async def block(self, ip: str, threat_type: str, severity: str = "medium") -> BlockRecord:
        now = self.clock()
        existing = await self._load(ip)

        if existing is not None and now < existing.expires_at:
            attempts = existing.attempts + 1
            record = BlockRecord(
                first_blocked_at=existing.first_blocked_at,
                expires_at=now + self.block_duration(attempts),
                attempts=attempts,
                threat_type=threat_type,
                severity=severity,
                notified=existing.notified,
            )
        else:
            record = BlockRecord(
                first_blocked_at=now,
                expires_at=now + self.block_duration(1),
                attempts=1,
                threat_type=threat_type,
                severity=severity,
            )

        await self.redis.set(self.key(ip), json.dumps(record.to_dict()),
                             ex=ceil_seconds(record.expires_at - now))
        self._log_block(ip, record)
        return record

    async def mark_notified(self, ip: str):
        key = self.key(ip)
        try:
            record = await self._load(ip)
            if record is None:
                return
            record.notified = True
            ttl = await self.redis.ttl(key)
            if ttl > 0:
                await self.redis.set(key, json.dumps(record.to_dict()), ex=ttl)
        except STORE_ERRORS as e:
            logger.error(f"Store error in mark_notified({ip}): {e}")


class OveruseBlockStore(IPBlockStore):
    """Blocks for request-rate violations, stored as a hash per IP"""

    def __init__(self, redis, base_window: float = 60 * 60, escalation_cap: int = 5,
                 clock: Callable[[], float] = time.time, key_prefix: str = OVERUSE_BLOCK_PREFIX):
        super().__init__(redis, key_prefix, base_window, escalation_cap, clock)

    async def _load(self, ip: str) -> Optional[BlockRecord]:
        data = await self.redis.hgetall(self.key(ip))
        if not data:
            return None
        if "attempts" not in data:
            # stray fields without a counter; treat as expired
            return BlockRecord(first_blocked_at=0.0, expires_at=0.0, attempts=1,
                               threat_type="", severity="")
        if "expires_at" not in data:
            # counter advanced, window not written yet: a block is in flight
            now = self.clock()
            attempts = int(data["attempts"])
            return BlockRecord(first_blocked_at=float(data.get("first_blocked_at", now)),
                               expires_at=now + self.block_duration(attempts), attempts=attempts,
                               threat_type=data.get("threat_type", "rate_limit"),
                               severity=data.get("severity", "medium"),
                               notified=_as_bool(data.get("notified", False)))
        return BlockRecord.from_dict({"first_blocked_at": data.get("first_blocked_at", 0), **data})

    async def block(self, ip: str, threat_type: str = "rate_limit", severity: str = "medium") -> BlockRecord:
        key = self.key(ip)
        now = self.clock()

        existing = await self._load(ip)
        if existing is not None and now >= existing.expires_at:
            await self.redis.delete(key)

        # the longest window bounds a counter whose fields never get written
        pipe = self.redis.pipeline(transaction=True)
        pipe.hincrby(key, "attempts", 1)
        pipe.expire(key, ceil_seconds(self.block_duration(self.escalation_cap)))
        attempts, _ = await pipe.execute()

        expires_at = now + self.block_duration(attempts)
        fields = {
            "expires_at": repr(expires_at),
            "threat_type": threat_type,
            "severity": severity,
        }
        if attempts == 1:
            fields["first_blocked_at"] = repr(now)
            fields["notified"] = "false"
        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(key, mapping=fields)
        pipe.expire(key, ceil_seconds(expires_at - now))
        await pipe.execute()

        record = await self._load(ip)
        if record is None:
            record = BlockRecord(first_blocked_at=now, expires_at=expires_at, attempts=attempts,
                                 threat_type=threat_type, severity=severity)
        self._log_block(ip, record)
        return record

    async def mark_notified(self, ip: str):
        key = self.key(ip)
        try:
            # HSET leaves the key's TTL untouched
            if await self.redis.exists(key):
                await self.redis.hset(key, "notified", "true")
        except STORE_ERRORS as e:
            logger.error(f"Store error in mark_notified({ip}): {e}")
