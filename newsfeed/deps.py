from __future__ import annotations
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Depends, Header, Request

from newsfeed.adapters.db.pool import SemaphorePool, SqlPool
from newsfeed.adapters.embeddings.hash_embedder import HashingEmbedder
from newsfeed.adapters.embeddings.http_embedder import HttpEmbeddingClient
from newsfeed.adapters.embeddings.retry import RetryPolicy
from newsfeed.config import Settings, settings as default_settings
from newsfeed.core.errors import Forbidden, NotFound, Unauthenticated
from newsfeed.ports.embedding import EmbeddingClientPort
from newsfeed.ports.storage import ArticleStorePort, UserDirectoryPort
from newsfeed.ports.vector_index import VectorIndexPort
from newsfeed.repositories.inmemory import InMemoryArticleStore, InMemoryUserDirectory, InMemoryVectorIndex
from newsfeed.services.auth_service import CredentialVerifier
from newsfeed.services.feed_ranker import FeedRanker, RankerConfig
from newsfeed.services.ingest_worker import IngestionWorker

log = logging.getLogger("newsfeed.deps")


@dataclass
class Services:
    """进程内的组件图。每个组件拿到的是显式传入的 pool 句柄，而不是全局单例。"""
    settings: Settings
    directory: UserDirectoryPort
    store: ArticleStorePort
    index: VectorIndexPort
    embedder: EmbeddingClientPort
    verifier: CredentialVerifier
    ranker: FeedRanker
    worker: IngestionWorker
    pools: List[Any] = field(default_factory=list)

    async def startup(self) -> None:
        # postgres 后端需要建表/建扩展；内存实现没有这一步
        for comp in (self.store, self.index):
            ensure = getattr(comp, "ensure_schema", None)
            if ensure is not None:
                await ensure()

    async def aclose(self) -> None:
        await self.embedder.aclose()
        close = getattr(self.directory, "close", None)
        if close is not None:
            close()
        for p in self.pools:
            await p.dispose()

    async def status(self) -> dict:
        dir_ok, dir_err = await self.directory.ping_detail()
        store_ok, store_err = await self.store.ping_detail()
        idx_ok, idx_err = await self.index.ping_detail()
        emb_ok, emb_err = self.embedder.ping_detail()
        return {
            "ok": dir_ok and store_ok and idx_ok and emb_ok,
            "stores": {
                "users":    {"ok": dir_ok, "error": dir_err, "class": type(self.directory).__name__},
                "articles": {"ok": store_ok, "error": store_err, "class": type(self.store).__name__},
                "vectors":  {"ok": idx_ok, "error": idx_err, "class": type(self.index).__name__},
            },
            "embedder": {
                "ok": emb_ok, "error": emb_err, "class": type(self.embedder).__name__,
                "dim": self.embedder.dim, "model_version": self.embedder.model_version,
            },
            "ingest_queue": len(self.worker.source) if hasattr(self.worker.source, "__len__") else None,
        }


def _build_embedder(s: Settings) -> EmbeddingClientPort:
    """根据 settings.EMBEDDING_PROVIDER 构建嵌入器。"""
    provider = (s.EMBEDDING_PROVIDER or "").lower().strip()
    if provider in ("hash", "placeholder"):
        return HashingEmbedder(dim=s.EMBEDDING_DIM, max_tokens=s.EMBEDDING_MAX_TOKENS)
    if provider in ("http", "openai", "oai"):
        return HttpEmbeddingClient(
            base_url=s.EMBEDDING_BASE_URL,
            api_key=s.EMBEDDING_API_KEY,
            model=s.EMBEDDING_MODEL,
            dim=s.EMBEDDING_DIM,
            model_version=s.model_version,
            max_tokens=s.EMBEDDING_MAX_TOKENS,
            timeout=s.EMBEDDING_TIMEOUT,
        )
    raise RuntimeError(f"unknown EMBEDDING_PROVIDER={s.EMBEDDING_PROVIDER!r}")


def _build_directory(s: Settings) -> UserDirectoryPort:
    kind = (s.USER_DIRECTORY or "").lower().strip()
    if kind == "memory":
        return InMemoryUserDirectory()
    if kind == "mongo":
        from newsfeed.adapters.db.user_directory import MongoUserDirectory
        return MongoUserDirectory.from_uri(s.MONGO_URI, s.MONGO_DB, max_pool_size=s.DB_POOL_SIZE)
    raise RuntimeError(f"unknown USER_DIRECTORY={s.USER_DIRECTORY!r}")


def build_services(s: Optional[Settings] = None, *, embedder: Optional[EmbeddingClientPort] = None,
                   directory: Optional[UserDirectoryPort] = None) -> Services:
    s = s or default_settings
    embedder = embedder or _build_embedder(s)
    directory = directory or _build_directory(s)

    backend = (s.STORE_BACKEND or "").lower().strip()
    pools: List[Any] = []
    if backend == "postgres":
        from newsfeed.adapters.db.article_store import PgArticleStore
        from newsfeed.adapters.vector.pgvector_index import PgVectorIndex
        db_pool = SqlPool("articles", s.POSTGRES_DSN, s.DB_POOL_SIZE, s.DB_POOL_TIMEOUT)
        vec_pool = SqlPool("vectors", s.vector_dsn, s.VECTOR_POOL_SIZE, s.VECTOR_POOL_TIMEOUT)
        pools += [db_pool, vec_pool]
        store = PgArticleStore(db_pool)
        index = PgVectorIndex(vec_pool, dim=embedder.dim, model_version=embedder.model_version)
    elif backend == "memory":
        store = InMemoryArticleStore(SemaphorePool("articles", s.DB_POOL_SIZE, s.DB_POOL_TIMEOUT))
        index = InMemoryVectorIndex(embedder.dim, embedder.model_version,
                                    SemaphorePool("vectors", s.VECTOR_POOL_SIZE, s.VECTOR_POOL_TIMEOUT))
    else:
        raise RuntimeError(f"unknown STORE_BACKEND={s.STORE_BACKEND!r}")

    verifier = CredentialVerifier(directory, s.AUTH_SECRET_KEY, s.AUTH_ALGORITHM)
    ranker = FeedRanker(verifier, store, index, RankerConfig.from_settings(s))
    worker = IngestionWorker(
        store, index, embedder,
        policy=RetryPolicy(base=s.EMBEDDING_RETRY_BASE, factor=s.EMBEDDING_RETRY_FACTOR,
                           attempts=s.EMBEDDING_RETRY_ATTEMPTS, jitter=s.EMBEDDING_RETRY_JITTER),
        max_attempts=s.INGEST_MAX_ATTEMPTS,
        batch_size=s.INGEST_BATCH_SIZE,
        sweep_size=s.INGEST_SWEEP_SIZE,
    )
    log.info("services built: store=%s index=%s embedder=%s model_version=%s",
             type(store).__name__, type(index).__name__, type(embedder).__name__, embedder.model_version)
    return Services(settings=s, directory=directory, store=store, index=index, embedder=embedder,
                    verifier=verifier, ranker=ranker, worker=worker, pools=pools)


# —— FastAPI dependencies ——
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ranker(svc: Services = Depends(get_services)) -> FeedRanker:
    return svc.ranker


def get_worker(svc: Services = Depends(get_services)) -> IngestionWorker:
    return svc.worker


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    """`Authorization: Bearer <token>`; anything else is unauthenticated."""
    if not authorization:
        raise Unauthenticated("missing bearer token", stage="auth")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("invalid authorization header", stage="auth")
    return token.strip()


def require_admin(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
                  svc: Services = Depends(get_services)) -> None:
    expected = svc.settings.ADMIN_API_KEY
    if not expected:
        raise NotFound("admin routes are disabled", stage="admin")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise Forbidden("invalid admin key", stage="admin")
