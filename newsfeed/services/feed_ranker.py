from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Set

import numpy as np

from newsfeed.core.errors import FeedUnavailable, InvalidInput, NotFound, StorageError
from newsfeed.domain.models import (
    Article, FeedItem, FeedResponse, Interaction, InteractionKind, UserId, utcnow,
)
from newsfeed.ports.storage import ArticleStorePort
from newsfeed.ports.vector_index import VectorIndexPort
from newsfeed.services.auth_service import CredentialVerifier
from newsfeed.services.ranking import Candidate, RankWeights, rerank
from newsfeed.utils.cursor import FeedCursor, decode_cursor, encode_cursor
from newsfeed.utils.similarity import age_hours, exp_decay, weighted_mean

log = logging.getLogger("newsfeed.services.feed_ranker")


@dataclass(frozen=True)
class RankerConfig:
    history_limit: int = 50
    history_days: int = 30
    interest_decay: float = 0.02   # λ per hour, applied to interaction age
    overfetch: int = 3
    max_page_size: int = 100
    max_offset: int = 5000
    weights: RankWeights = RankWeights()

    @classmethod
    def from_settings(cls, s) -> "RankerConfig":
        return cls(
            history_limit=s.FEED_HISTORY_LIMIT,
            history_days=s.FEED_HISTORY_DAYS,
            interest_decay=s.FEED_INTEREST_DECAY,
            overfetch=s.FEED_OVERFETCH,
            max_page_size=s.FEED_MAX_PAGE_SIZE,
            max_offset=s.FEED_MAX_OFFSET,
            weights=RankWeights(alpha=s.FEED_ALPHA, beta=s.FEED_BETA, gamma=s.FEED_GAMMA,
                                recency_decay=s.FEED_RECENCY_DECAY),
        )


@dataclass
class _Session:
    """Per-request state derived from the cursor: nothing here outlives the request."""
    user_id: UserId
    page_size: int
    offset: int
    snapshot: datetime
    now: datetime


class FeedRanker:
    """
    个性化 feed：
      1. token -> user id（CredentialVerifier）
      2. 读最近 N 条交互（截止到 cursor 里的快照时间）
      3. liked 向量按 exp(-λ·age) 加权平均作为 query；无 liked 用 seen；都没有走 trending
      4. 向量检索 k = (offset + page_size) × overfetch，排除已交互文章
      5. α·sim + β·recency − γ·同源重复 贪心重排
      6. 截取一页，cursor = (offset, snapshot)
      7. 返回前为每条结果写一条 seen
    """
    def __init__(self, verifier: CredentialVerifier, store: ArticleStorePort, index: VectorIndexPort,
                 config: RankerConfig = RankerConfig(), clock: Callable[[], datetime] = utcnow):
        self.verifier = verifier
        self.store = store
        self.index = index
        self.config = config
        self.clock = clock

    async def feed(self, token: str, page_size: int, cursor: Optional[str] = None) -> FeedResponse:
        user_id = await self.verifier.verify(token)

        if not 1 <= page_size <= self.config.max_page_size:
            raise InvalidInput(f"page_size must be between 1 and {self.config.max_page_size}", stage="request")
        now = self.clock()
        if cursor:
            c = decode_cursor(cursor, max_offset=self.config.max_offset)
            if c.snapshot > now:
                raise InvalidInput("malformed cursor", stage="cursor")
            # 快照早于历史窗口：既没有可用的兴趣历史，也会让窗口下界溢出
            if c.snapshot < now - timedelta(days=self.config.history_days):
                raise InvalidInput("cursor expired", stage="cursor")
        else:
            c = FeedCursor(offset=0, snapshot=now)
        session = _Session(user_id=user_id, page_size=page_size, offset=c.offset, snapshot=c.snapshot, now=now)

        resp = await self._rank(session)
        log.debug("feed user=%s offset=%d items=%d", user_id, session.offset, len(resp.items))
        return resp

    async def record(self, token: str, article_id: uuid.UUID, kind: InteractionKind) -> Interaction:
        """Explicit feedback (like / dismiss / seen) for one article the user can still be shown."""
        user_id = await self.verifier.verify(token)
        art = await self.store.get_article(article_id)
        if art is None or art.retracted:
            raise NotFound(f"article {article_id} not found", stage="interaction")
        it = Interaction(user_id=user_id, article_id=article_id, kind=kind, at=self.clock())
        await self.store.record_interactions([it])
        log.info("interaction user=%s article=%s kind=%s", user_id, article_id, kind.value)
        return it

    async def _rank(self, s: _Session) -> FeedResponse:
        # —— 2. history（快照之前）+ 已交互集合（截止现在，含之前几页写入的 seen）——
        async with self._stage("history"):
            history = await self.store.interaction_history(
                s.user_id, since=s.snapshot - timedelta(days=self.config.history_days),
                limit=self.config.history_limit, until=s.snapshot,
            )
            excluded = await self.store.interacted_ids(s.user_id, until=s.now)
            served = await self._served_this_session(s)

        # —— 3. query vector ——
        async with self._stage("index"):
            query = await self._query_vector(history, s.snapshot)

        k = (s.offset + s.page_size) * self.config.overfetch
        if query is None:
            async with self._stage("trending"):
                candidates, articles = await self._trending(k, excluded)
            more = len(candidates) >= k
        else:
            async with self._stage("index"):
                hits = await self.index.query(query.tolist(), k, excluded)
            async with self._stage("metadata"):
                articles = await self.store.get_articles(h.article_id for h in hits)
            # 检索到已撤稿/未完成入库的文章：直接过滤
            candidates = [
                Candidate(h.article_id, h.similarity, h.published_at, h.source)
                for h in hits
                if h.article_id in articles and articles[h.article_id].servable
            ]
            more = len(hits) >= k

        ranked = rerank(candidates, self.config.weights, s.now, seed_sources=[a.source for a in served])
        page = ranked[:s.page_size]
        more = more or len(ranked) > s.page_size

        items = [
            FeedItem(
                article_id=r.candidate.article_id,
                score=round(r.score, 6),
                title=articles[r.candidate.article_id].title,
                source=r.candidate.source,
                published_at=r.candidate.published_at,
                url=articles[r.candidate.article_id].url,
                summary=articles[r.candidate.article_id].summary,
            )
            for r in page
        ]

        # —— 7. 记录曝光（happens-after 上面的读）——
        if items:
            at = self.clock()
            async with self._stage("record"):
                await self.store.record_interactions(
                    Interaction(user_id=s.user_id, article_id=it.article_id, kind=InteractionKind.seen, at=at)
                    for it in items
                )

        next_cursor = None
        if items and more:
            next_cursor = encode_cursor(FeedCursor(offset=s.offset + len(items), snapshot=s.snapshot))
        return FeedResponse(items=items, next_cursor=next_cursor)

    async def _served_this_session(self, s: _Session) -> List[Article]:
        """Articles already handed out on earlier pages of this cursor session, oldest first."""
        if s.offset == 0:
            return []
        after = await self.store.interaction_history(
            s.user_id, since=s.snapshot, limit=s.offset + self.config.history_limit, until=s.now,
        )
        ids = [i.article_id for i in reversed(after) if i.kind == InteractionKind.seen and i.at > s.snapshot]
        arts = await self.store.get_articles(ids)
        return [arts[i] for i in dict.fromkeys(ids) if i in arts]

    async def _query_vector(self, history: Sequence[Interaction], snapshot: datetime) -> Optional[np.ndarray]:
        for kind in (InteractionKind.liked, InteractionKind.seen):
            picked = [i for i in history if i.kind == kind]
            if not picked:
                continue
            vectors = await self.index.get_vectors({i.article_id for i in picked})
            usable = [i for i in picked if i.article_id in vectors]
            if not usable:
                continue
            weights = [exp_decay(age_hours(i.at, snapshot), self.config.interest_decay) for i in usable]
            q = weighted_mean([vectors[i.article_id] for i in usable], weights)
            if q is not None:
                log.debug("query vector from %d %s interactions", len(usable), kind.value)
                return q
        return None

    async def _trending(self, k: int, excluded: Set[uuid.UUID]):
        latest = await self.store.latest(k, excluded)
        candidates = [Candidate(a.id, 0.0, a.published_at, a.source) for a in latest]
        return candidates, {a.id: a for a in latest}

    @staticmethod
    @asynccontextmanager
    async def _stage(stage: str):
        """Store/index failures become FeedUnavailable tagged with the stage; pool exhaustion passes through."""
        try:
            yield
        except (StorageError, OSError, TimeoutError) as e:
            raise FeedUnavailable(f"{stage} stage failed", stage=stage) from e
