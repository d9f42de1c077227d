import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ip_block_store import OveruseBlockStore, ThreatBlockStore

HOUR = 60 * 60
IP = "203.0.113.7"


@pytest.fixture
def threat_blocks(store, clock):
    return ThreatBlockStore(store, clock=clock)


@pytest.fixture
def overuse_blocks(store, clock):
    return OveruseBlockStore(store, clock=clock)


def broken_store():
    redis = MagicMock()
    error = RedisConnectionError("connection refused")
    for name in ("get", "set", "hgetall", "hset", "hincrby", "expire", "delete", "exists", "ttl"):
        setattr(redis, name, AsyncMock(side_effect=error))
    return redis


# ============================================================
# Threat block store
# ============================================================

@pytest.mark.asyncio
async def test_block_then_is_blocked(threat_blocks, clock):
    await threat_blocks.block(IP, "sql_injection", "high")
    status = await threat_blocks.is_blocked(IP)
    assert status.blocked
    assert status.attempts == 1
    assert status.threat_type == "sql_injection"
    assert status.severity == "high"
    assert status.expires_at == clock() + 2 * HOUR


@pytest.mark.asyncio
async def test_repeat_block_escalates(threat_blocks, clock):
    first = await threat_blocks.block(IP, "x", "high")
    clock.advance(60)
    second = await threat_blocks.block(IP, "x", "high")
    assert second.attempts == 2
    assert second.expires_at >= first.expires_at + 2 * HOUR - 60
    assert second.expires_at == clock() + 4 * HOUR
    assert second.first_blocked_at == first.first_blocked_at


@pytest.mark.asyncio
async def test_escalation_is_capped(threat_blocks, clock):
    for _ in range(8):
        record = await threat_blocks.block(IP, "xss", "high")
    assert record.attempts == 8
    assert record.expires_at == clock() + 5 * 2 * HOUR


@pytest.mark.asyncio
async def test_block_after_expiry_starts_over(threat_blocks, clock):
    await threat_blocks.block(IP, "xss", "high")
    await threat_blocks.block(IP, "xss", "high")
    clock.advance(4 * HOUR + 1)
    assert not (await threat_blocks.is_blocked(IP)).blocked
    record = await threat_blocks.block(IP, "xss", "high")
    assert record.attempts == 1


@pytest.mark.asyncio
async def test_expired_record_is_deleted_on_read(store, threat_blocks, clock):
    await threat_blocks.block(IP, "xss", "high")
    # store TTL longer than the record's own deadline
    record = json.loads(await store.get("secblock:" + IP))
    record["expires_at"] = clock() - 1
    await store.set("secblock:" + IP, json.dumps(record), ex=HOUR)

    assert not (await threat_blocks.is_blocked(IP)).blocked
    assert await store.get("secblock:" + IP) is None


@pytest.mark.asyncio
async def test_mark_notified_keeps_ttl(store, threat_blocks, clock):
    await threat_blocks.block(IP, "xss", "high")
    clock.advance(600)
    ttl_before = await store.ttl("secblock:" + IP)
    await threat_blocks.mark_notified(IP)
    assert (await threat_blocks.is_blocked(IP)).notified is True
    assert await store.ttl("secblock:" + IP) == ttl_before


@pytest.mark.asyncio
async def test_notified_survives_escalation(threat_blocks):
    await threat_blocks.block(IP, "xss", "high")
    await threat_blocks.mark_notified(IP)
    record = await threat_blocks.block(IP, "xss", "high")
    assert record.notified is True


@pytest.mark.asyncio
async def test_unblock(threat_blocks):
    await threat_blocks.block(IP, "xss", "high")
    assert await threat_blocks.unblock(IP) is True
    assert not (await threat_blocks.is_blocked(IP)).blocked
    assert await threat_blocks.unblock(IP) is False


@pytest.mark.asyncio
async def test_concurrent_json_blocks_may_undercount(threat_blocks):
    # read-modify-write on the JSON record: last writer wins, so two
    # simultaneous repeat violations may count as one
    await threat_blocks.block(IP, "xss", "high")
    await asyncio.gather(threat_blocks.block(IP, "xss", "high"), threat_blocks.block(IP, "xss", "high"))
    status = await threat_blocks.is_blocked(IP)
    assert status.blocked
    assert status.attempts in (2, 3)


@pytest.mark.asyncio
async def test_corrupt_record_reads_as_unblocked(store, threat_blocks):
    await store.set("secblock:" + IP, "{not json")
    assert not (await threat_blocks.is_blocked(IP)).blocked


# ============================================================
# Overuse block store
# ============================================================

@pytest.mark.asyncio
async def test_overuse_block_and_escalation(overuse_blocks, clock):
    first = await overuse_blocks.block(IP)
    assert first.attempts == 1
    assert first.threat_type == "rate_limit"
    assert first.expires_at == clock() + HOUR

    clock.advance(30)
    second = await overuse_blocks.block(IP)
    assert second.attempts == 2
    assert second.expires_at == clock() + 2 * HOUR
    assert second.first_blocked_at == first.first_blocked_at

    status = await overuse_blocks.is_blocked(IP)
    assert status.blocked and status.attempts == 2


@pytest.mark.asyncio
async def test_overuse_concurrent_blocks_never_lose_attempts(overuse_blocks):
    await asyncio.gather(*(overuse_blocks.block(IP) for _ in range(5)))
    assert (await overuse_blocks.is_blocked(IP)).attempts == 5


@pytest.mark.asyncio
async def test_overuse_read_during_block_keeps_the_block(store, overuse_blocks, clock, monkeypatch):
    # a read lands after the counter moved but before the window is written
    make_pipeline = store.pipeline
    reads = []

    def pipeline(transaction=True):
        pipe = make_pipeline(transaction)
        execute = pipe.execute

        async def execute_then_read():
            result = await execute()
            if not reads:
                reads.append(await overuse_blocks.is_blocked(IP))
            return result
        pipe.execute = execute_then_read
        return pipe

    monkeypatch.setattr(store, "pipeline", pipeline)
    record = await overuse_blocks.block(IP)

    assert reads[0].blocked is True
    assert reads[0].attempts == 1
    assert record.attempts == 1
    assert record.expires_at == clock() + HOUR
    assert (await overuse_blocks.is_blocked(IP)).blocked


@pytest.mark.asyncio
async def test_overuse_counter_without_window_is_not_evicted(store, overuse_blocks):
    await store.hincrby("rate_limit_block:" + IP, "attempts", 1)
    assert (await overuse_blocks.is_blocked(IP)).blocked
    assert await store.exists("rate_limit_block:" + IP) == 1


@pytest.mark.asyncio
async def test_overuse_block_after_expiry_resets(overuse_blocks, clock):
    await overuse_blocks.block(IP)
    clock.advance(HOUR + 1)
    assert not (await overuse_blocks.is_blocked(IP)).blocked
    assert (await overuse_blocks.block(IP)).attempts == 1


@pytest.mark.asyncio
async def test_overuse_mark_notified(store, overuse_blocks, clock):
    await overuse_blocks.block(IP)
    clock.advance(120)
    ttl_before = await store.ttl("rate_limit_block:" + IP)
    await overuse_blocks.mark_notified(IP)
    assert (await overuse_blocks.is_blocked(IP)).notified is True
    assert await store.ttl("rate_limit_block:" + IP) == ttl_before


@pytest.mark.asyncio
async def test_overuse_mark_notified_without_record_is_noop(store, overuse_blocks):
    await overuse_blocks.mark_notified(IP)
    assert await store.exists("rate_limit_block:" + IP) == 0


# ============================================================
# Fail-open
# ============================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("store_class", [ThreatBlockStore, OveruseBlockStore])
async def test_is_blocked_fails_open(store_class):
    blocks = store_class(broken_store())
    assert (await blocks.is_blocked(IP)).blocked is False


@pytest.mark.asyncio
@pytest.mark.parametrize("store_class", [ThreatBlockStore, OveruseBlockStore])
async def test_block_propagates_store_errors(store_class):
    blocks = store_class(broken_store())
    with pytest.raises(RedisConnectionError):
        await blocks.block(IP, "x", "high")


@pytest.mark.asyncio
@pytest.mark.parametrize("store_class", [ThreatBlockStore, OveruseBlockStore])
async def test_mark_notified_swallows_store_errors(store_class):
    await store_class(broken_store()).mark_notified(IP)
