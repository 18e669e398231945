from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import all_, and_, any_, desc, func, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from newsfeed.adapters.db.pool import SqlPool
from newsfeed.adapters.db.tables import articles, interactions, metadata, uuid_array
from newsfeed.core.errors import StorageError
from newsfeed.domain.models import (
    Article, IncomingArticle, IngestState, Interaction, InteractionKind, UserId, utcnow,
)

log = logging.getLogger("newsfeed.adapters.db.article_store")


def _to_article(row) -> Article:
    m = row._mapping
    return Article(
        id=m["id"],
        title=m["title"],
        body_ref=m["body_ref"] or "",
        body_text=m["body_text"] or "",
        published_at=m["published_at"],
        source=m["source"],
        url=m["url"],
        summary=m["summary"] or "",
        keywords=list(m["keywords"] or []),
        retracted=m["retracted"],
        ingest_state=IngestState(m["ingest_state"]),
        embedding_pending=m["embedding_pending"],
        model_version=m["model_version"],
        attempts=m["attempts"],
        last_error=m["last_error"],
    )


def _to_interaction(row) -> Interaction:
    m = row._mapping
    return Interaction(user_id=m["user_id"], article_id=m["article_id"],
                       kind=InteractionKind(m["kind"]), at=m["at"])


def _servable():
    return and_(articles.c.retracted.is_(False), articles.c.ingest_state == IngestState.indexed.value)


def _existing_stmt(incoming: IncomingArticle):
    if not incoming.url:
        return select(articles).where(articles.c.id == incoming.id)
    # 优先按 id；url 冲突时返回先入库的那篇
    return (
        select(articles)
        .where((articles.c.id == incoming.id) | (articles.c.url == incoming.url))
        .order_by((articles.c.id == incoming.id).desc())
        .limit(1)
    )


def latest_stmt(limit: int, excluded: Set[uuid.UUID] = frozenset()):
    stmt = select(articles).where(_servable())
    if excluded:
        stmt = stmt.where(articles.c.id != all_(uuid_array("excluded", excluded)))
    return stmt.order_by(desc(articles.c.published_at), desc(articles.c.id)).limit(int(limit))


class PgArticleStore:
    """
    文章元数据 + 交互日志（PostgreSQL）。每个操作单独从池里取连接并立即提交，
    因此同一请求内先写后读能读到自己的写入。
    """
    def __init__(self, pool: SqlPool):
        self.pool = pool

    @asynccontextmanager
    async def _tx(self, stage: str):
        try:
            async with self.pool.transaction() as conn:
                yield conn
        except SQLAlchemyError as e:
            log.warning("[article-store] %s failed: %s", stage, e)
            raise StorageError(f"article store {stage} failed", stage=stage) from e

    async def ensure_schema(self) -> None:
        async with self._tx("schema") as conn:
            await conn.run_sync(metadata.create_all)
        log.info("articles/interactions tables ensured")

    async def ping_detail(self) -> tuple[bool, str | None]:
        try:
            async with self._tx("ping") as conn:
                await conn.execute(text("SELECT 1"))
            return True, None
        except Exception as e:
            return False, f"{e.__class__.__name__}: {e}"

    # —— articles ——
    async def write_ahead(self, incoming: IncomingArticle) -> Article:
        """Insert the pending row; an id or url already present returns the stored article instead."""
        stmt = insert(articles).values(
            id=incoming.id,
            title=incoming.title,
            body_ref=incoming.body_ref,
            body_text=incoming.body,
            published_at=incoming.published_at,
            source=incoming.source,
            url=incoming.url,
            summary=incoming.summary,
            keywords=incoming.keywords,
            ingest_state=IngestState.pending.value,
            embedding_pending=True,
        ).on_conflict_do_nothing()
        async with self._tx("write_ahead") as conn:
            await conn.execute(stmt)
            row = (await conn.execute(_existing_stmt(incoming))).first()
        return _to_article(row)

    async def get_article(self, article_id: uuid.UUID) -> Optional[Article]:
        async with self._tx("get_article") as conn:
            row = (await conn.execute(select(articles).where(articles.c.id == article_id))).first()
        return _to_article(row) if row else None

    async def get_articles(self, article_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Article]:
        ids = list(article_ids)
        if not ids:
            return {}
        async with self._tx("get_articles") as conn:
            rows = (await conn.execute(
                select(articles).where(articles.c.id == any_(uuid_array("ids", ids)))
            )).all()
        return {r._mapping["id"]: _to_article(r) for r in rows}

    async def live_ids(self, article_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        ids = list(article_ids)
        if not ids:
            return set()
        stmt = (select(articles.c.id)
                .where(articles.c.id == any_(uuid_array("ids", ids)))
                .where(articles.c.retracted.is_(False)))
        async with self._tx("live_ids") as conn:
            rows = (await conn.execute(stmt)).all()
        return {r[0] for r in rows}

    async def set_ingest_state(self, article_id: uuid.UUID, state: IngestState, *,
                               embedding_pending: bool, model_version: Optional[str] = None,
                               attempts: Optional[int] = None, last_error: Optional[str] = None) -> None:
        values = {
            "ingest_state": state.value,
            "embedding_pending": embedding_pending,
            "last_error": last_error,
            "updated_at": func.now(),
        }
        if model_version is not None:
            values["model_version"] = model_version
        if attempts is not None:
            values["attempts"] = attempts
        async with self._tx("set_ingest_state") as conn:
            await conn.execute(update(articles).where(articles.c.id == article_id).values(**values))

    async def articles_to_ingest(self, max_attempts: int, limit: int) -> List[Article]:
        stmt = (
            select(articles)
            .where(articles.c.embedding_pending.is_(True))
            .where(articles.c.retracted.is_(False))
            .where(articles.c.attempts < max_attempts)
            .order_by(articles.c.created_at)
            .limit(limit)
        )
        async with self._tx("articles_to_ingest") as conn:
            rows = (await conn.execute(stmt)).all()
        return [_to_article(r) for r in rows]

    async def exhausted_articles(self, max_attempts: int, limit: int = 200) -> List[Article]:
        stmt = (
            select(articles)
            .where(articles.c.embedding_pending.is_(True))
            .where(articles.c.retracted.is_(False))
            .where(articles.c.attempts >= max_attempts)
            .order_by(articles.c.created_at)
            .limit(limit)
        )
        async with self._tx("exhausted_articles") as conn:
            rows = (await conn.execute(stmt)).all()
        return [_to_article(r) for r in rows]

    async def requeue_stale_versions(self, current_version: str) -> int:
        stmt = (
            update(articles)
            .where(articles.c.ingest_state == IngestState.indexed.value)
            .where(articles.c.model_version.is_distinct_from(current_version))
            .values(ingest_state=IngestState.pending.value, embedding_pending=True,
                    attempts=0, updated_at=func.now())
        )
        async with self._tx("requeue_stale") as conn:
            res = await conn.execute(stmt)
        return int(res.rowcount or 0)

    async def retract(self, article_id: uuid.UUID) -> bool:
        stmt = (update(articles).where(articles.c.id == article_id)
                .values(retracted=True, updated_at=func.now()))
        async with self._tx("retract") as conn:
            res = await conn.execute(stmt)
        return bool(res.rowcount)

    async def latest(self, limit: int, excluded: Set[uuid.UUID] = frozenset()) -> List[Article]:
        async with self._tx("latest") as conn:
            rows = (await conn.execute(latest_stmt(limit, excluded))).all()
        return [_to_article(r) for r in rows]

    # —— interactions ——
    async def record_interactions(self, items: Iterable[Interaction]) -> None:
        rows = [
            {"user_id": i.user_id, "article_id": i.article_id, "kind": i.kind.value, "at": i.at}
            for i in items
        ]
        if not rows:
            return
        async with self._tx("record_interactions") as conn:
            await conn.execute(insert(interactions), rows)

    async def interaction_history(self, user_id: UserId, since: datetime, limit: int,
                                  until: Optional[datetime] = None) -> List[Interaction]:
        stmt = (
            select(interactions)
            .where(interactions.c.user_id == user_id)
            .where(interactions.c.at >= since)
            .where(interactions.c.at <= (until or utcnow()))
            .order_by(desc(interactions.c.at), desc(interactions.c.id))
            .limit(int(limit))
        )
        async with self._tx("interaction_history") as conn:
            rows = (await conn.execute(stmt)).all()
        return [_to_interaction(r) for r in rows]

    async def interacted_ids(self, user_id: UserId, until: Optional[datetime] = None) -> Set[uuid.UUID]:
        stmt = (
            select(interactions.c.article_id).distinct()
            .where(interactions.c.user_id == user_id)
            .where(interactions.c.at <= (until or utcnow()))
        )
        async with self._tx("interacted_ids") as conn:
            rows = (await conn.execute(stmt)).all()
        return {r[0] for r in rows}
