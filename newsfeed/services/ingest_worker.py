from __future__ import annotations
import asyncio
import logging
import random
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Protocol

from newsfeed.adapters.embeddings.retry import RetryPolicy, embed_with_retry
from newsfeed.core.errors import FeedError, Inconsistent, ModelUnavailable, NotFound
from newsfeed.domain.models import Article, IncomingArticle, IngestState
from newsfeed.ports.embedding import EmbeddingClientPort, Fatal, Ok
from newsfeed.ports.storage import ArticleStorePort
from newsfeed.ports.vector_index import VectorIndexPort

log = logging.getLogger("newsfeed.services.ingest_worker")


# —— 状态机 ——
class IngestEvent(str, Enum):
    embed_issued = "embed_issued"   # 发出 embed 请求
    stored = "stored"               # 向量 upsert + 行状态都写成功
    failed = "failed"               # embed 失败 / upsert 失败
    reconciled = "reconciled"       # 行仍 pending，但索引里已有当前版本向量
    requeued = "requeued"           # 模型升级，需要按新版本重新 embed


_TRANSITIONS: Dict[tuple, IngestState] = {
    (IngestState.pending, IngestEvent.embed_issued): IngestState.embedding,
    (IngestState.failed, IngestEvent.embed_issued): IngestState.embedding,
    # 上一轮在 embedding 中途退出（进程重启等），直接重新发起
    (IngestState.embedding, IngestEvent.embed_issued): IngestState.embedding,
    (IngestState.embedding, IngestEvent.stored): IngestState.indexed,
    (IngestState.embedding, IngestEvent.failed): IngestState.failed,
    (IngestState.pending, IngestEvent.reconciled): IngestState.indexed,
    (IngestState.embedding, IngestEvent.reconciled): IngestState.indexed,
    (IngestState.failed, IngestEvent.reconciled): IngestState.indexed,
    (IngestState.indexed, IngestEvent.requeued): IngestState.pending,
}


def transition(state: IngestState, event: IngestEvent) -> IngestState:
    """The only way an article's ingest state changes. Anything not listed is a bug."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise Inconsistent(f"illegal ingest transition {state.value} --{event.value}-->",
                           stage="ingest") from None


# —— article source ——
class ArticleSource(Protocol):
    """Where new articles come from. How they were sourced is not this service's concern."""

    def pull(self, limit: int) -> List[IncomingArticle]: ...

    def push_back(self, items: Iterable[IncomingArticle]) -> None: ...


class QueueArticleSource:
    """In-process hand-off queue filled by POST /admin/articles (or any producer)."""
    def __init__(self):
        self._q: Deque[IncomingArticle] = deque()

    def submit(self, items: Iterable[IncomingArticle]) -> int:
        n = 0
        for it in items:
            self._q.append(it)
            n += 1
        return n

    def pull(self, limit: int) -> List[IncomingArticle]:
        out = []
        while self._q and len(out) < limit:
            out.append(self._q.popleft())
        return out

    def push_back(self, items: Iterable[IncomingArticle]) -> None:
        for it in reversed(list(items)):
            self._q.appendleft(it)

    def __len__(self) -> int:
        return len(self._q)


@dataclass
class IngestReport:
    received: int = 0
    duplicates: int = 0
    requeued: int = 0
    pruned: int = 0
    orphans_removed: int = 0
    reconciled: int = 0
    indexed: int = 0
    failed: int = 0
    exhausted: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class IngestionWorker:
    """
    每一轮（run_pass）：
      1. 从 source 取新文章，先 write-ahead 到 Article Store（pending, embedding_pending=true）
      2. 模型版本变化：已索引文章重新排队；旧版本向量清理
      3. 对账：分页巡检孤儿/撤稿向量并删除；待处理批次里索引已有向量的直接标记 indexed（不重复 upsert）
      4. 逐篇 embed（带退避重试）-> upsert 向量 -> 行标记 indexed
    向量写在行之后；任一步失败行保持 embedding_pending=true，下一轮重试。
    """
    def __init__(self, store: ArticleStorePort, index: VectorIndexPort, embedder: EmbeddingClientPort,
                 source: Optional[ArticleSource] = None, policy: RetryPolicy = RetryPolicy(),
                 max_attempts: int = 5, batch_size: int = 100, sweep_size: int = 1000,
                 sleep=asyncio.sleep, rng: Optional[random.Random] = None):
        self.store = store
        self.index = index
        self.embedder = embedder
        self.source = source or QueueArticleSource()
        self.policy = policy
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.sweep_size = sweep_size
        self._sweep_after: Optional[uuid.UUID] = None
        self._sleep = sleep
        self._rng = rng
        self._lock = asyncio.Lock()

    @property
    def model_version(self) -> str:
        return self.embedder.model_version

    async def run_pass(self) -> IngestReport:
        # 定时任务与手动触发共用，同一时刻只跑一轮
        async with self._lock:
            report = IngestReport()
            await self._drain_source(report)
            async with self._step("upgrade"):
                await self._upgrade_versions(report)
            async with self._step("sweep"):
                await self._sweep_orphans(report)

            batch = await self.store.articles_to_ingest(self.max_attempts, self.batch_size)
            # 行仍 pending 但当前版本向量已在索引里：上一轮 upsert 之后写行失败
            already = await self.index.present_ids([a.id for a in batch], self.model_version) if batch else set()
            for art in batch:
                try:
                    if art.id in already:
                        await self._reconcile_one(art, report)
                    else:
                        await self._ingest_one(art, report)
                except FeedError as e:
                    # 行状态没写成：仍是 embedding_pending，下一轮再处理
                    report.failed += 1
                    log.warning("[ingest] article %s skipped this pass: %s", art.id, e)
            for art in await self.store.exhausted_articles(self.max_attempts):
                report.exhausted.append(str(art.id))
                log.error("[ingest] article %s exhausted %d attempts, needs operator attention: %s",
                          art.id, art.attempts, art.last_error)
            log.info("[ingest] pass done received=%d duplicates=%d indexed=%d failed=%d reconciled=%d exhausted=%d",
                     report.received, report.duplicates, report.indexed, report.failed, report.reconciled,
                     len(report.exhausted))
            return report

    @asynccontextmanager
    async def _step(self, name: str):
        """Housekeeping steps are best-effort: a failure is logged and the pass goes on to ingest."""
        try:
            yield
        except FeedError as e:
            log.warning("[ingest] %s step failed this pass: %s", name, e)

    async def _drain_source(self, report: IngestReport) -> None:
        batch = self.source.pull(self.batch_size)
        for i, incoming in enumerate(batch):
            try:
                art = await self.store.write_ahead(incoming)
            except FeedError as e:
                # 没写进去的放回队列，下轮再来
                self.source.push_back(batch[i:])
                log.warning("[ingest] write-ahead failed for %s, %d items re-queued: %s",
                            incoming.id, len(batch) - i, e)
                return
            report.received += 1
            if art.id != incoming.id:
                report.duplicates += 1
                log.info("[ingest] %s duplicates article %s (url %s), skipped", incoming.id, art.id, incoming.url)

    async def _upgrade_versions(self, report: IngestReport) -> None:
        report.requeued = await self.store.requeue_stale_versions(self.model_version)
        report.pruned = await self.index.prune_stale(self.model_version)
        if report.requeued or report.pruned:
            log.info("[ingest] model %s: requeued=%d pruned=%d", self.model_version, report.requeued, report.pruned)

    async def _sweep_orphans(self, report: IngestReport) -> None:
        """
        每轮只检查索引里的一页 id（keyset 翻页，扫到尾再从头开始），
        删除没有对应行或已撤稿的向量。撤稿本身会立即删除向量，这里只是兜底。
        """
        page = await self.index.article_ids(after=self._sweep_after, limit=self.sweep_size)
        self._sweep_after = page[-1] if len(page) >= self.sweep_size else None
        if not page:
            return
        live = await self.store.live_ids(page)
        for aid in page:
            if aid in live:
                continue
            try:
                await self.index.remove(aid)
            except FeedError as e:
                log.warning("[ingest] could not remove orphan %s: %s", aid, e)
                continue
            report.orphans_removed += 1
            log.warning("[ingest] %s", Inconsistent(f"index entry {aid} has no live article row", stage="reconcile"))

    async def _reconcile_one(self, art: Article, report: IngestReport) -> None:
        await self._apply(art.id, art.ingest_state, IngestEvent.reconciled,
                          embedding_pending=False, model_version=self.model_version, attempts=art.attempts)
        report.reconciled += 1
        log.warning("[ingest] %s", Inconsistent(
            f"article {art.id} was pending but already indexed for {self.model_version}; marked indexed",
            stage="reconcile"))

    async def _ingest_one(self, art: Article, report: IngestReport) -> None:
        state = await self._apply(art.id, art.ingest_state, IngestEvent.embed_issued,
                                  embedding_pending=True, attempts=art.attempts, last_error=art.last_error)

        outcome = await embed_with_retry(self.embedder, art.text, self.policy, sleep=self._sleep, rng=self._rng)
        result = outcome.result
        if isinstance(result, Fatal):
            # 输入本身有问题，再试也一样：直接用完预算交给运维
            attempts = self.max_attempts if result.invalid_input else art.attempts + 1
            await self._fail(art, state, f"fatal: {result.reason}", attempts, report)
            return
        if not isinstance(result, Ok):
            err = ModelUnavailable(f"{outcome.attempts} attempts: {result.reason}", stage="embed")
            await self._fail(art, state, f"retryable: {err}", art.attempts + 1, report)
            return

        try:
            await self.index.upsert(art.id, result.vector, self.model_version, art.published_at, art.source)
        except FeedError as e:
            await self._fail(art, state, f"index upsert: {e}", art.attempts + 1, report)
            return

        # 向量已写入；若这里失败，行保持 pending，下轮对账修正
        try:
            await self._apply(art.id, state, IngestEvent.stored,
                              embedding_pending=False, model_version=self.model_version, attempts=art.attempts)
        except FeedError as e:
            log.warning("[ingest] store update failed after upsert for %s, left for reconcile: %s", art.id, e)
            report.failed += 1
            return
        report.indexed += 1

    async def _fail(self, art: Article, state: IngestState, reason: str, attempts: int,
                    report: IngestReport) -> None:
        report.failed += 1
        log.warning("[ingest] article %s failed (attempt %d/%d): %s", art.id, attempts, self.max_attempts, reason)
        try:
            await self._apply(art.id, state, IngestEvent.failed,
                              embedding_pending=True, attempts=attempts, last_error=reason[:500])
        except FeedError as e:
            log.warning("[ingest] could not record failure for %s: %s", art.id, e)

    async def _apply(self, article_id: uuid.UUID, state: IngestState, event: IngestEvent, **kw) -> IngestState:
        new = transition(state, event)
        await self.store.set_ingest_state(article_id, new, **kw)
        log.debug("[ingest] %s %s -> %s", article_id, state.value, new.value)
        return new

    # —— 运维操作 ——
    def submit(self, items: Iterable[IncomingArticle]) -> int:
        if not isinstance(self.source, QueueArticleSource):
            raise NotFound("this worker has no hand-off queue", stage="ingest")
        return self.source.submit(items)

    async def retract(self, article_id: uuid.UUID) -> None:
        """Flag the row first, then drop every vector version, so the article is unreachable either way."""
        if not await self.store.retract(article_id):
            raise NotFound(f"article {article_id} not found", stage="retract")
        await self.index.remove(article_id)
        log.info("[ingest] article %s retracted", article_id)

    async def failures(self) -> List[Article]:
        return await self.store.exhausted_articles(self.max_attempts)
