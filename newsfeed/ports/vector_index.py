from __future__ import annotations
import uuid
from datetime import datetime
from typing import Protocol, Iterable, List, Dict, Set, Optional

from newsfeed.domain.models import IndexHit, Vector


class VectorIndexPort(Protocol):
    model_version: str

    async def upsert(self, article_id: uuid.UUID, vector: Vector, model_version: str,
                     published_at: datetime, source: str) -> None: ...

    async def query(self, vector: Vector, k: int,
                    excluded: Set[uuid.UUID] = frozenset()) -> List[IndexHit]: ...

    async def get_vectors(self, article_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Vector]: ...

    async def present_ids(self, article_ids: Iterable[uuid.UUID], model_version: str) -> Set[uuid.UUID]: ...

    async def remove(self, article_id: uuid.UUID) -> None: ...

    async def article_ids(self, after: Optional[uuid.UUID] = None, limit: int = 1000) -> List[uuid.UUID]: ...

    async def prune_stale(self, current_version: str) -> int: ...
