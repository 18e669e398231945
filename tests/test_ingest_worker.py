import random
import uuid
from datetime import timedelta

import pytest

from newsfeed.adapters.embeddings.hash_embedder import HashingEmbedder
from newsfeed.adapters.embeddings.retry import RetryPolicy
from newsfeed.core.errors import Inconsistent, NotFound, StorageError
from newsfeed.domain.models import IncomingArticle, IngestState, utcnow
from newsfeed.ports.embedding import Fatal, Retryable
from newsfeed.repositories.inmemory import InMemoryArticleStore, InMemoryVectorIndex
from newsfeed.services.ingest_worker import IngestEvent, IngestionWorker, QueueArticleSource, transition


class FlakyEmbedder(HashingEmbedder):
    """Fails with Retryable for the first `failures` calls, then behaves normally."""
    def __init__(self, failures, dim=32):
        super().__init__(dim=dim)
        self.failures = failures
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        if self.calls <= self.failures:
            return Retryable("HTTP 503")
        return await super().embed(text)


class CountingIndex(InMemoryVectorIndex):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.upserts = 0

    async def upsert(self, *a, **kw):
        self.upserts += 1
        await super().upsert(*a, **kw)


class StoreFailingAfterUpsert(InMemoryArticleStore):
    """The write that marks an article indexed fails once."""
    def __init__(self):
        super().__init__()
        self.armed = True

    async def set_ingest_state(self, article_id, state, **kw):
        if self.armed and state == IngestState.indexed:
            self.armed = False
            raise StorageError("connection reset", stage="set_ingest_state")
        await super().set_ingest_state(article_id, state, **kw)


async def _no_sleep(_):
    return None


def article(title="Rust compiler release", body="The rust compiler ships a faster borrow checker"):
    return IncomingArticle(title=title, body=body, source="wire", published_at=utcnow() - timedelta(hours=1))


def worker(embedder, store=None, index=None, attempts=3, max_attempts=5):
    store = store or InMemoryArticleStore()
    index = index or CountingIndex(embedder.dim, embedder.model_version)
    return IngestionWorker(store, index, embedder, source=QueueArticleSource(),
                           policy=RetryPolicy(attempts=attempts), max_attempts=max_attempts,
                           sleep=_no_sleep, rng=random.Random(0))


def test_transition_table():
    assert transition(IngestState.pending, IngestEvent.embed_issued) == IngestState.embedding
    assert transition(IngestState.embedding, IngestEvent.stored) == IngestState.indexed
    assert transition(IngestState.embedding, IngestEvent.failed) == IngestState.failed
    assert transition(IngestState.failed, IngestEvent.embed_issued) == IngestState.embedding
    assert transition(IngestState.pending, IngestEvent.reconciled) == IngestState.indexed
    with pytest.raises(Inconsistent):
        transition(IngestState.pending, IngestEvent.stored)      # 不能跳过 embedding
    with pytest.raises(Inconsistent):
        transition(IngestState.indexed, IngestEvent.failed)


@pytest.mark.asyncio
async def test_two_failures_then_success_is_indexed():
    emb = FlakyEmbedder(failures=2)
    w = worker(emb)
    a = article()
    w.submit([a])
    report = await w.run_pass()
    assert report.received == 1 and report.indexed == 1 and report.failed == 0
    row = await w.store.get_article(a.id)
    assert row.ingest_state == IngestState.indexed
    assert row.embedding_pending is False
    assert row.model_version == emb.model_version
    assert a.id in await w.index.present_ids([a.id], emb.model_version)
    assert emb.calls == 3


@pytest.mark.asyncio
async def test_all_attempts_fail_leaves_failed_then_retried_next_pass():
    emb = FlakyEmbedder(failures=3)
    w = worker(emb)
    a = article()
    w.submit([a])

    report = await w.run_pass()
    assert report.failed == 1 and report.indexed == 0
    row = await w.store.get_article(a.id)
    assert row.ingest_state == IngestState.failed
    assert row.embedding_pending is True and row.attempts == 1
    assert "503" in row.last_error
    assert w.index.upserts == 0                      # 从不写半成品向量
    assert await w.index.article_ids() == []
    assert await w.store.latest(10) == []            # 对 feed 不可见

    report = await w.run_pass()
    assert report.indexed == 1
    assert (await w.store.get_article(a.id)).ingest_state == IngestState.indexed


@pytest.mark.asyncio
async def test_exhausted_articles_are_reported(caplog):
    emb = FlakyEmbedder(failures=10 ** 6)
    w = worker(emb, attempts=1, max_attempts=2)
    a = article()
    w.submit([a])
    await w.run_pass()
    with caplog.at_level("ERROR", logger="newsfeed.services.ingest_worker"):
        report = await w.run_pass()
    assert report.exhausted == [str(a.id)]
    assert [x.id for x in await w.failures()] == [a.id]
    assert any("operator attention" in r.getMessage() for r in caplog.records)

    calls = emb.calls
    await w.run_pass()
    assert emb.calls == calls                        # 预算用完后不再调用模型


@pytest.mark.asyncio
async def test_invalid_input_exhausts_immediately():
    class Rejecting(HashingEmbedder):
        async def embed(self, text):
            return Fatal("text too long", invalid_input=True)

    w = worker(Rejecting(dim=32), max_attempts=5)
    a = article()
    w.submit([a])
    report = await w.run_pass()
    assert report.exhausted == [str(a.id)]
    row = await w.store.get_article(a.id)
    assert row.attempts == 5 and row.ingest_state == IngestState.failed


@pytest.mark.asyncio
async def test_store_failure_after_upsert_is_reconciled_without_second_upsert():
    emb = HashingEmbedder(dim=32)
    store = StoreFailingAfterUpsert()
    w = worker(emb, store=store)
    a = article()
    w.submit([a])

    await w.run_pass()
    row = await store.get_article(a.id)
    assert row.embedding_pending is True             # 行没跟上
    assert a.id in await w.index.present_ids([a.id], emb.model_version)
    assert w.index.upserts == 1

    report = await w.run_pass()
    assert report.reconciled == 1
    assert w.index.upserts == 1                      # 没有重复写入
    row = await store.get_article(a.id)
    assert row.ingest_state == IngestState.indexed and row.embedding_pending is False


@pytest.mark.asyncio
async def test_orphan_index_entries_are_removed():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    ghost = uuid.uuid4()
    await w.index.upsert(ghost, [1.0] + [0.0] * 31, emb.model_version, utcnow(), "wire")
    report = await w.run_pass()
    assert report.orphans_removed == 1
    assert await w.index.article_ids() == []


@pytest.mark.asyncio
async def test_model_upgrade_requeues_and_prunes():
    old = HashingEmbedder(dim=32, seed=1)
    w = worker(old)
    a = article()
    w.submit([a])
    await w.run_pass()

    new = HashingEmbedder(dim=32, seed=2)
    w2 = worker(new, store=w.store, index=w.index)
    w2.index.model_version = new.model_version
    report = await w2.run_pass()
    assert report.requeued == 1 and report.pruned == 1 and report.indexed == 1
    row = await w.store.get_article(a.id)
    assert row.model_version == new.model_version
    assert a.id in await w.index.present_ids([a.id], new.model_version)
    assert a.id not in await w.index.present_ids([a.id], old.model_version)


@pytest.mark.asyncio
async def test_retract_removes_from_index_immediately():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    a = article()
    w.submit([a])
    await w.run_pass()
    await w.retract(a.id)
    assert await w.index.article_ids() == []
    assert (await w.store.get_article(a.id)).retracted
    with pytest.raises(NotFound):
        await w.retract(uuid.uuid4())


@pytest.mark.asyncio
async def test_write_ahead_is_idempotent_for_resubmitted_articles():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    a = article()
    w.submit([a])
    await w.run_pass()
    w.submit([a])
    report = await w.run_pass()
    assert report.indexed == 0
    assert w.index.upserts == 1


@pytest.mark.asyncio
async def test_exhausted_retry_budget_records_model_unavailable():
    emb = FlakyEmbedder(failures=3)
    w = worker(emb)
    a = article()
    w.submit([a])
    await w.run_pass()
    row = await w.store.get_article(a.id)
    assert row.last_error.startswith("retryable: [embed] 3 attempts")


@pytest.mark.asyncio
async def test_orphan_sweep_pages_through_the_index():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    w.sweep_size = 2
    ghosts = sorted(uuid.uuid4() for _ in range(5))
    for g in ghosts:
        await w.index.upsert(g, [1.0] + [0.0] * 31, emb.model_version, utcnow(), "wire")

    report = await w.run_pass()
    assert report.orphans_removed == 2               # 每轮只看一页
    assert await w.index.article_ids() == ghosts[2:]

    removed = report.orphans_removed
    for _ in range(4):
        removed += (await w.run_pass()).orphans_removed
    assert removed == 5
    assert await w.index.article_ids() == []


@pytest.mark.asyncio
async def test_sweep_keeps_live_rows_and_drops_retracted_ones():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    keep, gone = article(), article(title="Other story", body="Something else entirely")
    w.submit([keep, gone])
    await w.run_pass()
    # 只翻行状态，不走 retract()，模拟撤稿后向量删除失败
    await w.store.retract(gone.id)

    report = await w.run_pass()
    assert report.orphans_removed == 1
    assert await w.index.article_ids() == [keep.id]


@pytest.mark.asyncio
async def test_sweep_failure_does_not_block_ingestion(caplog):
    class BrokenListing(CountingIndex):
        async def article_ids(self, after=None, limit=1000):
            raise StorageError("statement timeout", stage="article_ids")

    emb = HashingEmbedder(dim=32)
    w = worker(emb, index=BrokenListing(emb.dim, emb.model_version))
    a = article()
    w.submit([a])
    with caplog.at_level("WARNING", logger="newsfeed.services.ingest_worker"):
        report = await w.run_pass()
    assert report.indexed == 1
    assert any("sweep step failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_one_article_failing_does_not_abort_the_batch():
    class PoisonedStore(InMemoryArticleStore):
        def __init__(self):
            super().__init__()
            self.poisoned = None

        async def set_ingest_state(self, article_id, state, **kw):
            if article_id == self.poisoned:
                raise StorageError("row locked", stage="set_ingest_state")
            await super().set_ingest_state(article_id, state, **kw)

    emb = HashingEmbedder(dim=32)
    store = PoisonedStore()
    w = worker(emb, store=store)
    bad, good = article(), article(title="Second story", body="Markets rallied on Tuesday")
    store.poisoned = bad.id
    w.submit([bad, good])
    report = await w.run_pass()
    assert report.indexed == 1 and report.failed == 1
    assert (await store.get_article(good.id)).ingest_state == IngestState.indexed
    assert (await store.get_article(bad.id)).embedding_pending is True


@pytest.mark.asyncio
async def test_same_url_under_new_id_is_a_duplicate():
    emb = HashingEmbedder(dim=32)
    w = worker(emb)
    first = IncomingArticle(title="Rust compiler release", body="The rust compiler ships a faster borrow checker",
                            source="wire", url="https://example.com/rust-release",
                            published_at=utcnow() - timedelta(hours=1))
    again = IncomingArticle(title=first.title, body=first.body, source="mirror",
                            url="https://example.com/rust-release", published_at=first.published_at)
    w.submit([first])
    await w.run_pass()
    w.submit([again])
    report = await w.run_pass()
    assert report.received == 1 and report.duplicates == 1
    assert report.indexed == 0 and w.index.upserts == 1
    assert await w.store.get_article(again.id) is None
    assert await w.index.article_ids() == [first.id]


@pytest.mark.asyncio
async def test_supplied_summary_and_keywords_feed_the_embedding_text():
    class Recording(HashingEmbedder):
        def __init__(self):
            super().__init__(dim=32)
            self.texts = []

        async def embed(self, text):
            self.texts.append(text)
            return await super().embed(text)

    emb = Recording()
    w = worker(emb)
    a = IncomingArticle(title="Chip export rules", body="Full body text", source="wire",
                        summary="New limits on accelerator exports", keywords=["chips", " export ", ""],
                        published_at=utcnow() - timedelta(hours=1))
    w.submit([a])
    await w.run_pass()
    row = await w.store.get_article(a.id)
    assert row.summary == "New limits on accelerator exports"
    assert row.keywords == ["chips", "export"]
    assert "accelerator exports" in emb.texts[0] and "chips, export" in emb.texts[0]
