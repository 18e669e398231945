# newsfeed/repositories/inmemory.py
from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np

from newsfeed.adapters.db.pool import SemaphorePool
from newsfeed.ports.pool import PoolHandle
from newsfeed.core.errors import InvalidInput
from newsfeed.domain.models import (
    Article, IncomingArticle, IndexHit, IngestState, Interaction, User, UserId, Vector, utcnow,
)


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[User] = ()):
        self._store: Dict[UserId, User] = {u.id: u for u in users}

    def add(self, user: User) -> User:
        self._store[user.id] = user
        return user

    async def get_user(self, user_id: UserId) -> Optional[User]:
        return self._store.get(user_id)

    async def ping_detail(self) -> tuple[bool, str | None]:
        return True, None


class InMemoryArticleStore:
    def __init__(self, pool: PoolHandle | None = None):
        self.pool = pool or SemaphorePool("article-store")
        self._articles: Dict[uuid.UUID, Article] = {}
        self._order: List[uuid.UUID] = []
        self._by_url: Dict[str, uuid.UUID] = {}
        self._interactions: List[Interaction] = []

    async def ping_detail(self) -> tuple[bool, str | None]:
        return True, None

    # —— articles ——
    async def write_ahead(self, incoming: IncomingArticle) -> Article:
        async with self.pool.connection():
            existing = self._articles.get(incoming.id)
            if existing is None and incoming.url:
                existing = self._articles.get(self._by_url.get(incoming.url))
            if existing is not None:
                return existing
            art = Article(
                id=incoming.id,
                title=incoming.title,
                body_ref=incoming.body_ref,
                body_text=incoming.body,
                published_at=incoming.published_at,
                source=incoming.source,
                url=incoming.url,
                summary=incoming.summary,
                keywords=incoming.keywords,
            )
            self._articles[art.id] = art
            if art.url:
                self._by_url[art.url] = art.id
            self._order.append(art.id)
            return art

    async def get_article(self, article_id: uuid.UUID) -> Optional[Article]:
        async with self.pool.connection():
            return self._articles.get(article_id)

    async def get_articles(self, article_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Article]:
        async with self.pool.connection():
            return {i: self._articles[i] for i in article_ids if i in self._articles}

    async def live_ids(self, article_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        async with self.pool.connection():
            return {i for i in article_ids if i in self._articles and not self._articles[i].retracted}

    async def set_ingest_state(self, article_id: uuid.UUID, state: IngestState, *,
                               embedding_pending: bool, model_version: Optional[str] = None,
                               attempts: Optional[int] = None, last_error: Optional[str] = None) -> None:
        async with self.pool.connection():
            art = self._articles.get(article_id)
            if art is None:
                return
            update = {"ingest_state": state, "embedding_pending": embedding_pending, "last_error": last_error}
            if model_version is not None:
                update["model_version"] = model_version
            if attempts is not None:
                update["attempts"] = attempts
            self._articles[article_id] = art.model_copy(update=update)

    async def articles_to_ingest(self, max_attempts: int, limit: int) -> List[Article]:
        async with self.pool.connection():
            out = []
            for aid in self._order:
                art = self._articles[aid]
                if art.embedding_pending and not art.retracted and art.attempts < max_attempts:
                    out.append(art)
                if len(out) >= limit:
                    break
            return out

    async def exhausted_articles(self, max_attempts: int, limit: int = 200) -> List[Article]:
        async with self.pool.connection():
            out = [self._articles[a] for a in self._order
                   if self._articles[a].embedding_pending
                   and not self._articles[a].retracted
                   and self._articles[a].attempts >= max_attempts]
            return out[:limit]

    async def requeue_stale_versions(self, current_version: str) -> int:
        async with self.pool.connection():
            n = 0
            for aid, art in list(self._articles.items()):
                if art.ingest_state == IngestState.indexed and art.model_version != current_version:
                    self._articles[aid] = art.model_copy(update={
                        "ingest_state": IngestState.pending, "embedding_pending": True, "attempts": 0,
                    })
                    n += 1
            return n

    async def retract(self, article_id: uuid.UUID) -> bool:
        async with self.pool.connection():
            art = self._articles.get(article_id)
            if art is None:
                return False
            self._articles[article_id] = art.model_copy(update={"retracted": True})
            return True

    async def latest(self, limit: int, excluded: Set[uuid.UUID] = frozenset()) -> List[Article]:
        async with self.pool.connection():
            arr = [a for a in self._articles.values() if a.servable and a.id not in excluded]
            arr.sort(key=lambda x: (x.published_at, str(x.id)), reverse=True)
            return arr[:int(limit)]

    # —— interactions ——
    async def record_interactions(self, interactions: Iterable[Interaction]) -> None:
        async with self.pool.connection():
            self._interactions.extend(interactions)

    async def interaction_history(self, user_id: UserId, since: datetime, limit: int,
                                  until: Optional[datetime] = None) -> List[Interaction]:
        async with self.pool.connection():
            until = until or utcnow()
            rows = [i for i in self._interactions
                    if i.user_id == user_id and since <= i.at <= until]
            rows.sort(key=lambda i: i.at, reverse=True)
            return rows[:int(limit)]

    async def interacted_ids(self, user_id: UserId, until: Optional[datetime] = None) -> Set[uuid.UUID]:
        async with self.pool.connection():
            until = until or utcnow()
            return {i.article_id for i in self._interactions if i.user_id == user_id and i.at <= until}


@dataclass(frozen=True)
class _Entry:
    vector: np.ndarray  # L2-normalized
    published_at: datetime
    source: str


class InMemoryVectorIndex:
    """
    numpy 实现的精确余弦检索。写操作复制后整体替换 `_entries`（copy-on-write），
    读操作只拿当时的引用，所以查询总是看到一个一致快照，不需要全局锁。
    """
    def __init__(self, dim: int, model_version: str, pool: PoolHandle | None = None):
        self.dim = dim
        self.model_version = model_version
        self.pool = pool or SemaphorePool("vector-index")
        self._entries: Mapping[Tuple[uuid.UUID, str], _Entry] = {}

    async def ping_detail(self) -> tuple[bool, str | None]:
        return True, None

    def _normalize(self, vector: Vector) -> np.ndarray:
        v = np.asarray(vector, dtype=np.float32)
        if v.shape != (self.dim,):
            raise InvalidInput(f"vector has shape {v.shape}, expected ({self.dim},)", stage="index")
        n = float(np.linalg.norm(v))
        if n == 0.0:
            raise InvalidInput("zero vector", stage="index")
        return v / n

    async def upsert(self, article_id: uuid.UUID, vector: Vector, model_version: str,
                     published_at: datetime, source: str) -> None:
        entry = _Entry(self._normalize(vector), published_at, source)
        async with self.pool.connection():
            entries = dict(self._entries)
            entries[(article_id, model_version)] = entry
            self._entries = entries

    async def query(self, vector: Vector, k: int, excluded: Set[uuid.UUID] = frozenset()) -> List[IndexHit]:
        q = self._normalize(vector)
        async with self.pool.connection():
            snapshot = self._entries
        rows = [(aid, e) for (aid, ver), e in snapshot.items()
                if ver == self.model_version and aid not in excluded]
        if not rows or k <= 0:
            return []
        mat = np.stack([e.vector for _, e in rows])
        sims = mat @ q
        hits = [
            IndexHit(article_id=aid, similarity=float(s), published_at=e.published_at, source=e.source)
            for (aid, e), s in zip(rows, sims)
        ]
        hits.sort(key=lambda h: (h.similarity, h.published_at), reverse=True)
        return hits[:k]

    async def get_vectors(self, article_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Vector]:
        async with self.pool.connection():
            snapshot = self._entries
        out = {}
        for aid in article_ids:
            e = snapshot.get((aid, self.model_version))
            if e is not None:
                out[aid] = e.vector.tolist()
        return out

    async def present_ids(self, article_ids: Iterable[uuid.UUID], model_version: str) -> Set[uuid.UUID]:
        snapshot = self._entries
        return {aid for aid in article_ids if (aid, model_version) in snapshot}

    async def remove(self, article_id: uuid.UUID) -> None:
        async with self.pool.connection():
            self._entries = {key: e for key, e in self._entries.items() if key[0] != article_id}

    async def article_ids(self, after: Optional[uuid.UUID] = None, limit: int = 1000) -> List[uuid.UUID]:
        ids = sorted({aid for (aid, _) in self._entries if after is None or aid > after})
        return ids[:limit]

    async def prune_stale(self, current_version: str) -> int:
        async with self.pool.connection():
            kept = {key: e for key, e in self._entries.items() if key[1] == current_version}
            pruned = len(self._entries) - len(kept)
            self._entries = kept
            return pruned
