from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from pod_sentinel.errors import TransientStoreError
from pod_sentinel.timer_store import TimerStore, parse_pod_id


@pytest.mark.parametrize("key,expected", [
    ("shutdown:pod-1", "pod-1"),
    ("shutdown:", None),
    ("shutdown:a:b", None),
    ("ready:pod-1", None),
    ("shutdownpod-1", None),
    ("", None),
])
def test_parse_pod_id(key, expected):
    assert parse_pod_id(key, "shutdown") == expected


@pytest.mark.asyncio
async def test_arm_sets_deadline_and_expiry(timer_store, fake_redis, clock):
    await timer_store.arm("pod-1", 600)

    assert await timer_store.remaining("pod-1") == pytest.approx(600)
    # Redis keeps the key for the grace period past the deadline
    assert await fake_redis.ttl("shutdown:pod-1") == 660

    clock.advance(601)
    assert await timer_store.remaining("pod-1") == pytest.approx(-1)


@pytest.mark.asyncio
async def test_rearm_replaces_previous_timer(timer_store, fake_redis, clock):
    await timer_store.arm("pod-2", 3600)
    clock.advance(10)
    await timer_store.arm("pod-2", 3600)
    await timer_store.arm("pod-2", 3600)

    keys = [k async for k in fake_redis.scan_iter(match="shutdown:*")]
    assert keys == ["shutdown:pod-2"]
    assert await timer_store.remaining("pod-2") == pytest.approx(3600)


@pytest.mark.asyncio
@pytest.mark.parametrize("pod_id", ["", "a:b"])
async def test_arm_rejects_bad_pod_ids(timer_store, pod_id):
    with pytest.raises(ValueError):
        await timer_store.arm(pod_id, 60)


@pytest.mark.asyncio
async def test_remaining_is_none_without_timer(timer_store):
    assert await timer_store.remaining("ghost") is None


@pytest.mark.asyncio
async def test_remaining_falls_back_to_store_ttl(timer_store, fake_redis):
    await fake_redis.set("shutdown:legacy", "armed", ex=42)
    assert await timer_store.remaining("legacy") == 42

    await fake_redis.set("shutdown:forever", "armed")
    assert await timer_store.remaining("forever") == -1


@pytest.mark.asyncio
async def test_claim_succeeds_once(timer_store):
    await timer_store.arm("pod-1", 60)

    assert await timer_store.claim("pod-1") is True
    assert await timer_store.claim("pod-1") is False
    assert await timer_store.remaining("pod-1") is None


@pytest.mark.asyncio
async def test_claim_expired_succeeds_once_per_window(timer_store, clock):
    assert await timer_store.claim_expired("pod-1") is True
    assert await timer_store.claim_expired("pod-1") is False

    clock.advance(31)
    assert await timer_store.claim_expired("pod-1") is True


@pytest.mark.asyncio
async def test_claim_expired_refuses_while_timer_is_live(timer_store, fake_redis):
    await timer_store.arm("pod-1", 3600)

    assert await timer_store.claim_expired("pod-1") is False
    assert await fake_redis.exists("shutdown:pod-1") == 1
    assert await fake_redis.get("shutdown-claim:pod-1") is None


@pytest.mark.asyncio
async def test_scan_page_walks_namespace_with_cursor(timer_store, fake_redis):
    for i in range(5):
        await timer_store.arm(f"pod-{i}", 60)
    await fake_redis.set("ready:pod-0", "1")

    cursor, first = await timer_store.scan_page(0, 2)
    assert len(first) == 2
    assert cursor != 0

    seen = list(first)
    while cursor != 0:
        cursor, page = await timer_store.scan_page(cursor, 2)
        seen.extend(page)

    assert sorted(seen) == [f"shutdown:pod-{i}" for i in range(5)]
    assert await timer_store.count() == 5


@pytest.mark.asyncio
async def test_failed_stops_dead_letter(timer_store):
    await timer_store.record_failed_stop("pod-9")
    assert await timer_store.failed_stops() == ["pod-9"]


@pytest.mark.asyncio
async def test_dead_letter_disabled(fake_redis):
    store = TimerStore(fake_redis, dead_letter_key="")
    await store.record_failed_stop("pod-9")
    assert await store.failed_stops() == []
    assert fake_redis.lists == {}


@pytest.mark.asyncio
async def test_redis_errors_become_transient_store_errors():
    redis = AsyncMock()
    redis.delete.side_effect = RedisConnectionError("connection refused")
    store = TimerStore(redis)

    with pytest.raises(TransientStoreError):
        await store.claim("pod-1")


@pytest.mark.asyncio
async def test_enable_keyspace_events(timer_store, fake_redis):
    await timer_store.enable_keyspace_events()
    assert fake_redis.config["notify-keyspace-events"] == "K$Ex"


@pytest.mark.asyncio
async def test_enable_keyspace_events_tolerates_forbidden_config():
    redis = AsyncMock()
    redis.config_set.side_effect = ResponseError("unknown command 'CONFIG'")
    store = TimerStore(redis)

    await store.enable_keyspace_events()
