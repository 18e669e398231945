import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from newsfeed.adapters.db.pool import SemaphorePool
from newsfeed.core.errors import InvalidInput, ResourceExhausted
from newsfeed.repositories.inmemory import InMemoryVectorIndex

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
V1 = "m@3"


def index():
    return InMemoryVectorIndex(dim=3, model_version=V1)


@pytest.mark.asyncio
async def test_upsert_is_idempotent():
    idx = index()
    a, b = uuid.uuid4(), uuid.uuid4()
    await idx.upsert(a, [1, 0, 0], V1, NOW, "s")
    await idx.upsert(b, [0.6, 0.8, 0], V1, NOW, "s")
    once = await idx.query([1, 0, 0], 10)
    await idx.upsert(a, [1, 0, 0], V1, NOW, "s")
    twice = await idx.query([1, 0, 0], 10)
    assert once == twice
    assert [h.article_id for h in twice] == [a, b]


@pytest.mark.asyncio
async def test_reupsert_replaces_vector():
    idx = index()
    a = uuid.uuid4()
    await idx.upsert(a, [1, 0, 0], V1, NOW, "s")
    await idx.upsert(a, [0, 1, 0], V1, NOW, "s")
    hits = await idx.query([0, 1, 0], 5)
    assert len(hits) == 1 and hits[0].similarity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_query_orders_by_similarity_then_recency_and_excludes():
    idx = index()
    old, new, other, skip = (uuid.uuid4() for _ in range(4))
    await idx.upsert(old, [1, 0, 0], V1, NOW - timedelta(days=1), "s")
    await idx.upsert(new, [2, 0, 0], V1, NOW, "s")
    await idx.upsert(other, [0, 1, 0], V1, NOW, "s")
    await idx.upsert(skip, [1, 0.01, 0], V1, NOW, "s")
    hits = await idx.query([1, 0, 0], 3, excluded={skip})
    assert [h.article_id for h in hits] == [new, old, other]
    assert hits[0].published_at == NOW and hits[0].source == "s"


@pytest.mark.asyncio
async def test_remove_is_visible_immediately():
    idx = index()
    a = uuid.uuid4()
    await idx.upsert(a, [1, 0, 0], V1, NOW, "s")
    await idx.upsert(a, [1, 0, 0], "old@3", NOW, "s")
    await idx.remove(a)
    assert await idx.query([1, 0, 0], 5) == []
    assert await idx.article_ids() == []


@pytest.mark.asyncio
async def test_only_configured_version_is_queryable_and_stale_is_pruned():
    idx = index()
    a, b = uuid.uuid4(), uuid.uuid4()
    await idx.upsert(a, [1, 0, 0], "old@3", NOW, "s")
    await idx.upsert(b, [1, 0, 0], V1, NOW, "s")
    assert [h.article_id for h in await idx.query([1, 0, 0], 5)] == [b]
    assert await idx.present_ids([a], "old@3") == {a}
    assert await idx.present_ids([a], V1) == set()
    assert await idx.prune_stale(V1) == 1
    assert await idx.article_ids() == [b]


@pytest.mark.asyncio
async def test_rejects_wrong_shape_and_zero_vectors():
    idx = index()
    with pytest.raises(InvalidInput):
        await idx.upsert(uuid.uuid4(), [1, 0], V1, NOW, "s")
    with pytest.raises(InvalidInput):
        await idx.upsert(uuid.uuid4(), [0, 0, 0], V1, NOW, "s")


@pytest.mark.asyncio
async def test_query_sees_consistent_snapshot_during_writes():
    idx = index()
    ids = [uuid.uuid4() for _ in range(50)]

    async def writer():
        for i in ids:
            await idx.upsert(i, [1, 0, 0], V1, NOW, "s")
            await asyncio.sleep(0)

    async def reader():
        seen = []
        for _ in range(50):
            seen.append(len(await idx.query([1, 0, 0], 100)))
            await asyncio.sleep(0)
        return seen

    _, counts = await asyncio.gather(writer(), reader())
    assert counts == sorted(counts)       # 只会看到越来越多，不会看到半写状态
    assert len(await idx.query([1, 0, 0], 100)) == 50


@pytest.mark.asyncio
async def test_semaphore_pool_times_out_with_resource_exhausted():
    pool = SemaphorePool("tiny", size=1, timeout=0.05)
    async with pool.connection():
        with pytest.raises(ResourceExhausted) as ei:
            async with pool.connection():
                pass
    assert ei.value.retry_after is not None
    async with pool.connection():   # 释放后可以再拿到
        pass
