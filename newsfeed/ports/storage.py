from __future__ import annotations
import uuid
from datetime import datetime
from typing import Protocol, Iterable, List, Optional, Set

from newsfeed.domain.models import (
    Article, IncomingArticle, IngestState, Interaction, User, UserId,
)


class UserDirectoryPort(Protocol):
    """外部用户管理系统的只读视图：只关心 id 与是否被禁用。"""

    async def get_user(self, user_id: UserId) -> Optional[User]: ...

    async def ping_detail(self) -> tuple[bool, Optional[str]]: ...


class ArticleStorePort(Protocol):
    # —— articles ——
    async def write_ahead(self, incoming: IncomingArticle) -> Article: ...

    async def get_article(self, article_id: uuid.UUID) -> Optional[Article]: ...

    async def get_articles(self, article_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Article]: ...

    async def live_ids(self, article_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]: ...

    async def set_ingest_state(self, article_id: uuid.UUID, state: IngestState, *,
                               embedding_pending: bool, model_version: Optional[str] = None,
                               attempts: Optional[int] = None, last_error: Optional[str] = None) -> None: ...

    async def articles_to_ingest(self, max_attempts: int, limit: int) -> List[Article]: ...

    async def exhausted_articles(self, max_attempts: int, limit: int = 200) -> List[Article]: ...

    async def requeue_stale_versions(self, current_version: str) -> int: ...

    async def retract(self, article_id: uuid.UUID) -> bool: ...

    async def latest(self, limit: int, excluded: Set[uuid.UUID] = frozenset()) -> List[Article]: ...

    # —— interactions（append-only）——
    async def record_interactions(self, interactions: Iterable[Interaction]) -> None: ...

    async def interaction_history(self, user_id: UserId, since: datetime, limit: int,
                                  until: Optional[datetime] = None) -> List[Interaction]: ...

    async def interacted_ids(self, user_id: UserId, until: Optional[datetime] = None) -> Set[uuid.UUID]: ...

    async def ping_detail(self) -> tuple[bool, Optional[str]]: ...
