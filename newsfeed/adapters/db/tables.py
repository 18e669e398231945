from __future__ import annotations
from typing import Iterable

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Index, Integer, MetaData, String, Table, Text, bindparam, func,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.sql.elements import BindParameter
from pgvector.sqlalchemy import Vector

metadata = MetaData()

articles = Table(
    "articles", metadata,
    Column("id", UUID(as_uuid=True), primary_key=True),
    Column("title", Text, nullable=False),
    Column("body_ref", Text, nullable=False, server_default=""),
    Column("body_text", Text, nullable=False, server_default=""),
    Column("published_at", DateTime(timezone=True), nullable=False),
    Column("source", String(255), nullable=False),
    Column("url", Text, unique=True),
    Column("summary", Text, nullable=False, server_default=""),
    Column("keywords", ARRAY(Text), nullable=False, server_default="{}"),
    Column("retracted", Boolean, nullable=False, server_default="false"),
    Column("ingest_state", String(16), nullable=False, server_default="pending"),
    Column("embedding_pending", Boolean, nullable=False, server_default="true"),
    Column("model_version", String(128)),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("ix_articles_published_at", "published_at"),
    Index("ix_articles_pending", "embedding_pending", "attempts"),
)

# append-only：没有 UPDATE / DELETE 路径
interactions = Table(
    "interactions", metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("user_id", UUID(as_uuid=True), nullable=False),
    Column("article_id", UUID(as_uuid=True), nullable=False),
    Column("kind", String(16), nullable=False),
    Column("at", DateTime(timezone=True), nullable=False),
    Index("ix_interactions_user_at", "user_id", "at"),
)

vector_metadata = MetaData()


def uuid_array(name: str, ids: Iterable) -> BindParameter:
    """整个 id 列表作为一个数组参数（= ANY / <> ALL），不受 65535 个绑定参数的限制。"""
    return bindparam(name, list(ids), type_=ARRAY(UUID(as_uuid=True)))


def embeddings_table(dim: int) -> Table:
    """One row per (article_id, model_version); published_at/source ride along as payload."""
    return Table(
        "article_embeddings", vector_metadata,
        Column("article_id", UUID(as_uuid=True), primary_key=True),
        Column("model_version", String(128), primary_key=True),
        Column("embedding", Vector(dim), nullable=False),
        Column("published_at", DateTime(timezone=True), nullable=False),
        Column("source", String(255), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        extend_existing=True,
    )
