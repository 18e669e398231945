from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid

# ---- 核心域模型 ----
# Article 元数据与交互日志存关系库；向量只存在 Vector Index（按 model_version 分行）。

Vector = List[float]
UserId = uuid.UUID


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    # naive 时间一律视为 UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class InteractionKind(str, Enum):
    seen = "seen"
    liked = "liked"
    dismissed = "dismissed"


class IngestState(str, Enum):
    pending = "pending"
    embedding = "embedding"
    indexed = "indexed"
    failed = "failed"


class User(BaseModel):
    """Identity as resolved from the user directory. Profile fields belong to that collaborator."""
    id: UserId
    name: str = ""
    email: str = ""
    is_active: bool = True


class IncomingArticle(BaseModel):
    """An article handed over by the sourcing system, not yet stored."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    title: str
    body: str
    body_ref: str = ""
    published_at: datetime
    source: str
    # 同一 url 只入库一次（重复提交返回已有文章）
    url: Optional[str] = None
    # 上游（摘要/关键词提取）给出的富化信息，原样保存并参与 embedding
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)

    @field_validator("published_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None

    @field_validator("keywords")
    @classmethod
    def _keywords(cls, v: List[str]) -> List[str]:
        return [k.strip() for k in v if k and k.strip()]


class Article(BaseModel):
    id: uuid.UUID
    title: str
    body_ref: str = ""
    published_at: datetime
    source: str
    retracted: bool = False
    # —— ingestion bookkeeping（write-ahead 行上的状态）——
    ingest_state: IngestState = IngestState.pending
    embedding_pending: bool = True
    model_version: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    body_text: str = ""
    url: Optional[str] = None
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        """What gets embedded: title, summary, body, then keywords."""
        parts = [self.title, self.summary, self.body_text]
        if self.keywords:
            parts.append(", ".join(self.keywords))
        return "\n".join(p for p in parts if p).strip()

    @property
    def servable(self) -> bool:
        return not self.retracted and self.ingest_state == IngestState.indexed


class Interaction(BaseModel):
    user_id: UserId
    article_id: uuid.UUID
    kind: InteractionKind
    at: datetime = Field(default_factory=utcnow)

    @field_validator("at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class IndexHit(BaseModel):
    article_id: uuid.UUID
    similarity: float
    published_at: datetime
    source: str


class FeedItem(BaseModel):
    article_id: uuid.UUID
    score: float
    title: str = ""
    source: str = ""
    published_at: Optional[datetime] = None
    url: Optional[str] = None
    summary: str = ""


class FeedResponse(BaseModel):
    items: List[FeedItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
