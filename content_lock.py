"""
Editorial content locks

Grants one editor exclusive edit rights over one article for a bounded
time. Each lock is written twice: under the article (source of truth for
"is this article locked") and under the holder (to find what a holder
currently holds). A presence hash records when each holder was last seen so
locks held by disconnected editors can be reclaimed. The lock TTL is the
final backstop against a stuck lock.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from kv_store import ceil_seconds

logger = logging.getLogger("content_lock")


# ============================================================
# Records and results
# ============================================================

@dataclass
class ContentLock:
    article_id: str
    holder_id: str
    holder_name: str
    acquired_at: float
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContentLock':
        return cls(
            article_id=str(data["article_id"]),
            holder_id=str(data["holder_id"]),
            holder_name=data.get("holder_name", ""),
            acquired_at=float(data["acquired_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class LockResult:
    success: bool
    message: str
    expires_at: Optional[float] = None
    remaining_time: Optional[int] = None
    locked_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ReleaseResult:
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LockStatus:
    is_locked: bool
    can_edit: bool
    locked_by: Optional[str] = None
    locked_by_id: Optional[str] = None
    expires_at: Optional[float] = None
    remaining_time: Optional[int] = None
    is_owner: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class HolderLock:
    has_lock: bool
    article_id: Optional[str] = None
    expires_at: Optional[float] = None
    remaining_time: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ============================================================
# Lock manager
# ============================================================

class ContentLockManager:
    """
    Distributed article lock

    Store errors propagate to the caller; the HTTP layer turns them into a
    structured 503.
    """

    def __init__(self, redis, lang_prefix: str = "fr", lock_duration: int = 10 * 60,
                 clock: Callable[[], float] = time.time):
        self.redis = redis
        self.lang_prefix = lang_prefix
        self.lock_duration = lock_duration
        self.clock = clock

    # --- keys ---

    def _lock_key(self, article_id) -> str:
        return f"{self.lang_prefix}:article_lock:{article_id}"

    def _holder_key(self, holder_id) -> str:
        return f"{self.lang_prefix}:user_lock:{holder_id}"

    def _presence_key(self) -> str:
        return f"{self.lang_prefix}:connected_users"

    def _remaining(self, expires_at: float) -> int:
        return int(max(0.0, expires_at - self.clock()))

    # --- reads ---

    async def _get_lock(self, article_id) -> Optional[ContentLock]:
        raw = await self.redis.get(self._lock_key(article_id))
        if not raw:
            return None
        try:
            lock = ContentLock.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt lock record for article {article_id}, dropping it: {e}")
            await self.redis.delete(self._lock_key(article_id))
            return None
        if lock.expires_at <= self.clock():
            return None
        return lock

    async def _get_holder_entry(self, holder_id) -> Optional[Dict[str, Any]]:
        raw = await self.redis.get(self._holder_key(holder_id))
        if not raw:
            return None
        try:
            entry = json.loads(raw)
            entry["expires_at"] = float(entry["expires_at"])
            entry["article_id"] = str(entry["article_id"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt holder record for {holder_id}, dropping it: {e}")
            await self.redis.delete(self._holder_key(holder_id))
            return None
        if entry["expires_at"] <= self.clock():
            return None
        return entry

    # --- presence ---

    async def mark_connected(self, holder_id):
        await self.redis.hset(self._presence_key(), str(holder_id), repr(self.clock()))

    async def mark_disconnected(self, holder_id):
        await self.redis.hdel(self._presence_key(), str(holder_id))

    async def is_connected(self, holder_id) -> bool:
        last_seen = await self.redis.hget(self._presence_key(), str(holder_id))
        return bool(last_seen)

    # --- writes ---

    async def _write_lock(self, holder_id: str, article_id: str, holder_name: str) -> ContentLock:
        now = self.clock()
        lock = ContentLock(
            article_id=article_id,
            holder_id=holder_id,
            holder_name=holder_name,
            acquired_at=now,
            expires_at=now + self.lock_duration,
        )
        ttl = ceil_seconds(self.lock_duration)
        await self.redis.set(self._lock_key(article_id), json.dumps(lock.to_dict()), ex=ttl)
        await self.redis.set(
            self._holder_key(holder_id),
            json.dumps({"article_id": article_id, "expires_at": lock.expires_at}),
            ex=ttl,
        )
        await self.mark_connected(holder_id)
        return lock

    async def acquire(self, holder_id, article_id, holder_name: str = "") -> LockResult:
        holder_id, article_id = str(holder_id), str(article_id)

        existing = await self._get_lock(article_id)
        if existing is not None:
            if existing.holder_id == holder_id:
                lock = await self._write_lock(holder_id, article_id, holder_name or existing.holder_name)
                return LockResult(
                    success=True,
                    message="Lock refreshed successfully",
                    expires_at=lock.expires_at,
                    remaining_time=self.lock_duration,
                )

            if await self.is_connected(existing.holder_id):
                return LockResult(
                    success=False,
                    message=f"Article is being edited by {existing.holder_name}",
                    locked_by=existing.holder_name,
                    expires_at=existing.expires_at,
                )

            logger.info(f"Reclaiming lock on article {article_id} from disconnected holder "
                        f"{existing.holder_id} for {holder_id}")
            await self.release_all(existing.holder_id)

        current = await self._get_holder_entry(holder_id)
        if current is not None and current["article_id"] != article_id:
            await self.release(holder_id, current["article_id"])

        lock = await self._write_lock(holder_id, article_id, holder_name)
        logger.info(f"Lock acquired on article {article_id} by {holder_id} ({holder_name})")
        return LockResult(
            success=True,
            message="Lock acquired successfully",
            expires_at=lock.expires_at,
            remaining_time=self.lock_duration,
        )

    async def release(self, holder_id, article_id) -> ReleaseResult:
        holder_id, article_id = str(holder_id), str(article_id)
        existing = await self._get_lock(article_id)
        if existing is None or existing.holder_id != holder_id:
            return ReleaseResult(success=False, message="No valid lock found")

        await self.redis.delete(self._lock_key(article_id))
        entry = await self._get_holder_entry(holder_id)
        if entry is None or entry["article_id"] == article_id:
            await self.redis.delete(self._holder_key(holder_id))
        logger.info(f"Lock on article {article_id} released by {holder_id}")
        return ReleaseResult(success=True, message="Lock released successfully")

    async def release_all(self, holder_id) -> ReleaseResult:
        """Drop whatever the holder has locked and forget their presence (disconnect/logout)."""
        holder_id = str(holder_id)
        entry = await self._get_holder_entry(holder_id)
        if entry is not None:
            lock = await self._get_lock(entry["article_id"])
            # the article key may already belong to someone else
            if lock is None or lock.holder_id == holder_id:
                await self.redis.delete(self._lock_key(entry["article_id"]))
        await self.redis.delete(self._holder_key(holder_id))
        await self.mark_disconnected(holder_id)
        return ReleaseResult(success=True, message="Holder locks released")

    # --- status ---

    async def check_status(self, article_id, holder_id=None) -> LockStatus:
        article_id = str(article_id)
        holder_id = str(holder_id) if holder_id is not None else None

        lock = await self._get_lock(article_id)
        if lock is None:
            return LockStatus(is_locked=False, can_edit=True)

        is_owner = holder_id is not None and lock.holder_id == holder_id
        if not is_owner and not await self.is_connected(lock.holder_id):
            logger.info(f"Lock on article {article_id} held by absent holder {lock.holder_id}, releasing")
            await self.release_all(lock.holder_id)
            return LockStatus(is_locked=False, can_edit=True)

        return LockStatus(
            is_locked=True,
            can_edit=is_owner,
            locked_by=lock.holder_name,
            locked_by_id=lock.holder_id,
            expires_at=lock.expires_at,
            remaining_time=self._remaining(lock.expires_at),
            is_owner=is_owner,
        )

    async def get_holder_current_lock(self, holder_id) -> HolderLock:
        entry = await self._get_holder_entry(str(holder_id))
        if entry is None:
            return HolderLock(has_lock=False)
        return HolderLock(
            has_lock=True,
            article_id=entry["article_id"],
            expires_at=entry["expires_at"],
            remaining_time=self._remaining(entry["expires_at"]),
        )

    # --- maintenance ---

    async def sweep_stale_holders(self, max_idle: float = 5 * 60) -> int:
        """Release the locks of holders not seen for ``max_idle`` seconds."""
        cutoff = self.clock() - max_idle
        swept = 0
        for holder_id, last_seen in (await self.redis.hgetall(self._presence_key())).items():
            try:
                seen_at = float(last_seen)
            except ValueError:
                seen_at = 0.0
            if seen_at < cutoff:
                await self.release_all(holder_id)
                swept += 1
        if swept:
            logger.info(f"Swept {swept} stale lock holders")
        return swept
