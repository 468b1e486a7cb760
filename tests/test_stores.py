import asyncio

import pytest

from db import KeyValueStore
from offline.cache import CACHE_KEY, LocalCacheStore, StaleSnapshotError
from offline.models import (
    CacheSnapshot,
    EntityKind,
    FavoritePayload,
    MutationAction,
    MutationType,
    PendingMutation,
    ReservationPayload,
)
from offline.queue import PENDING_MUTATIONS_KEY, PendingMutationQueue


def favorite(id: str, business_id: str = "42") -> PendingMutation:
    return PendingMutation(
        id=id,
        type=MutationType.favorite,
        action=MutationAction.create,
        payload=FavoritePayload(user_id="user_1", business_id=business_id),
    )


def snapshot(version: int, n: int) -> CacheSnapshot:
    return CacheSnapshot(
        version=version,
        entities={
            EntityKind.businesses: [{"id": str(i), "v": version} for i in range(n)],
            EntityKind.favorites: [{"id": f"f{version}"}],
        },
    )


@pytest.mark.asyncio
async def test_key_value_delete_many(kv: KeyValueStore) -> None:
    await kv.set("a", "1")
    await kv.set("b", "2")
    await kv.set("a", "3")
    assert await kv.get("a") == "3"
    await kv.delete("a", "b", "missing")
    assert await kv.get("a") is None
    assert await kv.get("b") is None


@pytest.mark.asyncio
async def test_queue_keeps_enqueue_order_across_reads(kv: KeyValueStore) -> None:
    queue = PendingMutationQueue(kv)
    ids = [f"mutation_{i}" for i in range(20)]
    for i, id in enumerate(ids):
        await queue.enqueue(favorite(id, business_id=str(i)))
        if i % 3 == 0:
            await queue.list()
    assert [m.id for m in await queue.list()] == ids


@pytest.mark.asyncio
async def test_concurrent_enqueues_are_not_lost(kv: KeyValueStore) -> None:
    queue = PendingMutationQueue(kv)
    await asyncio.gather(*(queue.enqueue(favorite(f"mutation_{i}")) for i in range(10)))
    assert await queue.count() == 10


@pytest.mark.asyncio
async def test_remove_confirmed_keeps_order_of_the_rest(kv: KeyValueStore) -> None:
    queue = PendingMutationQueue(kv)
    for i in range(5):
        await queue.enqueue(favorite(f"mutation_{i}"))
    await queue.remove_confirmed({"mutation_1", "mutation_3", "mutation_9"})
    assert [m.id for m in await queue.list()] == ["mutation_0", "mutation_2", "mutation_4"]


@pytest.mark.asyncio
async def test_corrupt_queue_resets_to_empty(kv: KeyValueStore) -> None:
    await kv.set(PENDING_MUTATIONS_KEY, "[{not json")
    queue = PendingMutationQueue(kv)
    assert await queue.list() == []
    assert await kv.get(PENDING_MUTATIONS_KEY) is None

    await queue.enqueue(favorite("mutation_1"))
    assert await queue.count() == 1


@pytest.mark.asyncio
async def test_cache_read_before_first_write(kv: KeyValueStore) -> None:
    assert await LocalCacheStore(kv).read() is None


@pytest.mark.asyncio
async def test_cache_write_replaces_wholesale(kv: KeyValueStore) -> None:
    cache = LocalCacheStore(kv)
    await cache.write(snapshot(1, 5))
    await cache.write(snapshot(2, 2))
    got = await cache.read()
    assert got is not None
    assert got.version == 2
    assert got.businesses == [{"id": "0", "v": 2}, {"id": "1", "v": 2}]
    assert got.favorites == [{"id": "f2"}]


@pytest.mark.asyncio
async def test_cache_rejects_older_version(kv: KeyValueStore) -> None:
    cache = LocalCacheStore(kv)
    await cache.write(snapshot(5, 1))
    with pytest.raises(StaleSnapshotError):
        await cache.write(snapshot(4, 3))
    await cache.write(snapshot(5, 2))
    got = await cache.read()
    assert got is not None and len(got.businesses) == 2


@pytest.mark.asyncio
async def test_corrupt_cache_reads_as_empty(kv: KeyValueStore) -> None:
    await kv.set(CACHE_KEY, '{"version": "x"}')
    assert await LocalCacheStore(kv).read() is None


@pytest.mark.asyncio
async def test_reads_never_see_half_a_write(kv: KeyValueStore) -> None:
    cache = LocalCacheStore(kv)
    await cache.write(snapshot(1, 50))

    results = await asyncio.gather(
        cache.read(), cache.write(snapshot(2, 3)), cache.read(), cache.read()
    )
    for got in (results[0], results[2], results[3]):
        assert got is not None
        assert {b["v"] for b in got.businesses} == {got.version}
        assert len(got.businesses) == (50 if got.version == 1 else 3)
        assert got.favorites == [{"id": f"f{got.version}"}]


@pytest.mark.asyncio
async def test_clear_drops_snapshot_and_queue(kv: KeyValueStore) -> None:
    cache = LocalCacheStore(kv)
    queue = PendingMutationQueue(kv)
    await cache.write(snapshot(1, 1))
    await queue.enqueue(favorite("mutation_1"))

    await cache.clear()

    assert await cache.read() is None
    assert await queue.list() == []


@pytest.mark.asyncio
async def test_rebind_rewrites_queued_references(kv: KeyValueStore) -> None:
    queue = PendingMutationQueue(kv)
    await queue.enqueue(favorite("mutation_1"))
    await queue.enqueue(
        PendingMutation(
            id="mutation_2",
            type=MutationType.reservation,
            action=MutationAction.delete,
            payload=ReservationPayload(user_id="user_1", reservation_id="local_7"),
        )
    )

    await queue.rebind({"local_7": "abc123"})

    [_, cancel] = await queue.list()
    assert isinstance(cancel.payload, ReservationPayload)
    assert cancel.payload.reservation_id == "abc123"
