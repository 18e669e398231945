from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Sequence

from newsfeed.utils.similarity import recency_score


@dataclass(frozen=True)
class RankWeights:
    alpha: float = 0.7   # similarity
    beta: float = 0.2    # recency
    gamma: float = 0.1   # source repetition
    recency_decay: float = 0.03  # per hour


@dataclass(frozen=True)
class Candidate:
    article_id: uuid.UUID
    similarity: float
    published_at: datetime
    source: str


@dataclass(frozen=True)
class Ranked:
    candidate: Candidate
    score: float


def rerank(candidates: Sequence[Candidate], weights: RankWeights, now: datetime,
           seed_sources: Iterable[str] = ()) -> List[Ranked]:
    """
    final = α·similarity + β·recency(published_at) − γ·repeats(source)

    Greedy: each step takes the best remaining candidate, where `repeats` is how many
    items from the same source were already placed earlier in this ordering. A source
    is never capped, it just costs more each time it shows up again.
    Ties go to the more recently published article, then to the article id.

    `seed_sources` are sources already placed before this call (earlier pages of the
    same session), so a continuation page keeps paying for them.
    """
    base: Dict[uuid.UUID, float] = {
        c.article_id: weights.alpha * c.similarity
        + weights.beta * recency_score(c.published_at, now, weights.recency_decay)
        for c in candidates
    }
    remaining = list(candidates)
    placed: Dict[str, int] = {}
    for src in seed_sources:
        placed[src] = placed.get(src, 0) + 1
    out: List[Ranked] = []
    while remaining:
        best_i = 0
        best_key = None
        for i, c in enumerate(remaining):
            score = base[c.article_id] - weights.gamma * placed.get(c.source, 0)
            key = (score, c.published_at, str(c.article_id))
            if best_key is None or key > best_key:
                best_i, best_key = i, key
        c = remaining.pop(best_i)
        out.append(Ranked(c, best_key[0]))
        placed[c.source] = placed.get(c.source, 0) + 1
    return out
