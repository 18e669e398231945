# -*- coding: utf-8 -*-
from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

import numpy as np
from sqlalchemy import all_, any_, delete, desc, func, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from newsfeed.adapters.db.pool import SqlPool
from newsfeed.adapters.db.tables import embeddings_table, uuid_array, vector_metadata
from newsfeed.core.errors import InvalidInput, StorageError
from newsfeed.domain.models import IndexHit, Vector

log = logging.getLogger("newsfeed.adapters.vector.pgvector_index")

# hnsw.ef_search 的默认值与上限
EF_SEARCH_DEFAULT = 40
EF_SEARCH_MAX = 1000


def ef_search_for(k: int, excluded: int) -> int:
    """HNSW 只返回 ef_search 个候选，排除与版本过滤在扫描之后才做，所以按 k + 排除数放大。"""
    return max(EF_SEARCH_DEFAULT, min(EF_SEARCH_MAX, k + excluded))


class PgVectorIndex:
    """
    pgvector 上的最近邻检索：
      table: article_embeddings (article_id, model_version) -> vector(dim)
      similarity: cosine（向量写入前已 L2 归一化，1 - cosine_distance 即相似度）
    每次查询是一条 SELECT，天然读到语句开始时的一致快照；删除提交后立刻对后续查询生效。
    """
    def __init__(self, pool: SqlPool, dim: int, model_version: str, hnsw: bool = True):
        self.pool = pool
        self.dim = dim
        self.model_version = model_version
        self.hnsw = hnsw
        self.table = embeddings_table(dim)

    @asynccontextmanager
    async def _tx(self, stage: str):
        try:
            async with self.pool.transaction() as conn:
                yield conn
        except SQLAlchemyError as e:
            log.warning("[vector-index] %s failed: %s", stage, e)
            raise StorageError(f"vector index {stage} failed", stage=f"index.{stage}") from e

    async def ensure_schema(self) -> None:
        async with self._tx("schema") as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(vector_metadata.create_all)
            if self.hnsw:
                await conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS ix_article_embeddings_hnsw "
                    "ON article_embeddings USING hnsw (embedding vector_cosine_ops)"
                ))
        log.info("article_embeddings table ensured (dim=%d)", self.dim)

    async def ping_detail(self) -> tuple[bool, str | None]:
        try:
            async with self._tx("ping") as conn:
                await conn.execute(text("SELECT 1"))
            return True, None
        except Exception as e:
            return False, f"{e.__class__.__name__}: {e}"

    def _normalize(self, vector: Vector) -> list[float]:
        v = np.asarray(vector, dtype=np.float32)
        if v.shape != (self.dim,):
            raise InvalidInput(f"vector has shape {v.shape}, expected ({self.dim},)", stage="index")
        n = float(np.linalg.norm(v))
        if n == 0.0:
            raise InvalidInput("zero vector", stage="index")
        return (v / n).tolist()

    async def upsert(self, article_id: uuid.UUID, vector: Vector, model_version: str,
                     published_at: datetime, source: str) -> None:
        t = self.table
        stmt = insert(t).values(
            article_id=article_id,
            model_version=model_version,
            embedding=self._normalize(vector),
            published_at=published_at,
            source=source,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[t.c.article_id, t.c.model_version],
            set_={
                "embedding": stmt.excluded.embedding,
                "published_at": stmt.excluded.published_at,
                "source": stmt.excluded.source,
                "updated_at": func.now(),
            },
        )
        async with self._tx("upsert") as conn:
            await conn.execute(stmt)

    def query_stmt(self, vector: Vector, k: int, excluded: Set[uuid.UUID] = frozenset()):
        t = self.table
        distance = t.c.embedding.cosine_distance(self._normalize(vector))
        stmt = (
            select(t.c.article_id, (1 - distance).label("similarity"), t.c.published_at, t.c.source)
            .where(t.c.model_version == self.model_version)
        )
        if excluded:
            stmt = stmt.where(t.c.article_id != all_(uuid_array("excluded", excluded)))
        return stmt.order_by(distance, desc(t.c.published_at)).limit(int(k))

    async def query(self, vector: Vector, k: int, excluded: Set[uuid.UUID] = frozenset()) -> List[IndexHit]:
        if k <= 0:
            return []
        stmt = self.query_stmt(vector, k, excluded)
        async with self._tx("query") as conn:
            if self.hnsw:
                await conn.execute(text(f"SET LOCAL hnsw.ef_search = {ef_search_for(k, len(excluded))}"))
            rows = (await conn.execute(stmt)).all()
            if self.hnsw and len(rows) < k:
                # 近似扫描的候选被过滤光了：同一事务里退回精确扫描
                await conn.execute(text("SET LOCAL enable_indexscan = off"))
                rows = (await conn.execute(stmt)).all()
        return [
            IndexHit(article_id=r.article_id, similarity=float(r.similarity),
                     published_at=r.published_at, source=r.source)
            for r in rows
        ]

    async def get_vectors(self, article_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Vector]:
        ids = list(article_ids)
        if not ids:
            return {}
        t = self.table
        stmt = (select(t.c.article_id, t.c.embedding)
                .where(t.c.model_version == self.model_version)
                .where(t.c.article_id == any_(uuid_array("ids", ids))))
        async with self._tx("get_vectors") as conn:
            rows = (await conn.execute(stmt)).all()
        return {r.article_id: [float(x) for x in r.embedding] for r in rows}

    async def present_ids(self, article_ids: Iterable[uuid.UUID], model_version: str) -> Set[uuid.UUID]:
        ids = list(article_ids)
        if not ids:
            return set()
        t = self.table
        stmt = (select(t.c.article_id)
                .where(t.c.article_id == any_(uuid_array("ids", ids)))
                .where(t.c.model_version == model_version))
        async with self._tx("present_ids") as conn:
            rows = (await conn.execute(stmt)).all()
        return {r[0] for r in rows}

    async def remove(self, article_id: uuid.UUID) -> None:
        t = self.table
        async with self._tx("remove") as conn:
            await conn.execute(delete(t).where(t.c.article_id == article_id))

    async def article_ids(self, after: Optional[uuid.UUID] = None, limit: int = 1000) -> List[uuid.UUID]:
        """One keyset page of indexed article ids (any version), ascending."""
        t = self.table
        stmt = select(t.c.article_id).distinct()
        if after is not None:
            stmt = stmt.where(t.c.article_id > after)
        stmt = stmt.order_by(t.c.article_id).limit(int(limit))
        async with self._tx("article_ids") as conn:
            rows = (await conn.execute(stmt)).all()
        return [r[0] for r in rows]

    async def prune_stale(self, current_version: str) -> int:
        t = self.table
        async with self._tx("prune_stale") as conn:
            res = await conn.execute(delete(t).where(t.c.model_version != current_version))
        return int(res.rowcount or 0)
