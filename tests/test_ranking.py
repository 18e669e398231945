import uuid
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from newsfeed.services.ranking import Candidate, RankWeights, rerank
from newsfeed.utils.similarity import exp_decay, recency_score, weighted_mean

NOW = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)


def cand(sim, source, hours_ago=1.0, aid=None):
    return Candidate(aid or uuid.uuid4(), sim, NOW - timedelta(hours=hours_ago), source)


def test_source_penalty_lets_other_source_overtake():
    # 已 like 过两篇 tech；候选里 tech 还有 E(0.95)、C(0.9)，science 有 D(0.85)
    e, c, d = cand(0.95, "tech"), cand(0.90, "tech"), cand(0.85, "science")
    w = RankWeights(alpha=0.7, beta=0.0, gamma=0.2)
    order = [r.candidate for r in rerank([c, d, e], w, NOW)]
    assert order == [e, d, c]


def test_without_penalty_similarity_order_holds():
    e, c, d = cand(0.95, "tech"), cand(0.90, "tech"), cand(0.85, "science")
    w = RankWeights(alpha=0.7, beta=0.0, gamma=0.0)
    assert [r.candidate for r in rerank([d, c, e], w, NOW)] == [e, c, d]


def test_source_is_penalised_not_capped():
    cands = [cand(0.9 - i * 0.01, "wire") for i in range(4)]
    ranked = rerank(cands, RankWeights(alpha=1.0, beta=0.0, gamma=0.1), NOW)
    assert len(ranked) == 4
    assert [round(r.score, 4) for r in ranked] == [0.9, 0.79, 0.68, 0.57]


def test_ties_prefer_more_recent_article():
    old, new = cand(0.5, "a", hours_ago=5), cand(0.5, "b", hours_ago=1)
    ranked = rerank([old, new], RankWeights(alpha=1.0, beta=0.0, gamma=0.0), NOW)
    assert ranked[0].candidate is new


def test_recency_breaks_similarity_gap_when_weighted():
    stale = cand(0.6, "a", hours_ago=200)
    fresh = cand(0.5, "b", hours_ago=0)
    ranked = rerank([stale, fresh], RankWeights(alpha=0.5, beta=0.5, gamma=0.0, recency_decay=0.03), NOW)
    assert ranked[0].candidate is fresh


def test_seed_sources_continue_the_penalty():
    a, b = cand(0.8, "wire"), cand(0.75, "blog")
    w = RankWeights(alpha=1.0, beta=0.0, gamma=0.1)
    assert rerank([a, b], w, NOW)[0].candidate is a
    assert rerank([a, b], w, NOW, seed_sources=["wire"])[0].candidate is b


def test_exp_decay_and_recency():
    assert exp_decay(0, 0.5) == 1.0
    assert exp_decay(-3, 0.5) == 1.0          # future timestamps count as now
    assert recency_score(NOW - timedelta(hours=10), NOW, 0.1) == pytest.approx(np.exp(-1.0))
    naive = (NOW - timedelta(hours=10)).replace(tzinfo=None)
    assert recency_score(naive, NOW, 0.1) == pytest.approx(np.exp(-1.0))


def test_weighted_mean_is_normalized_and_weighted():
    q = weighted_mean([[1.0, 0.0], [0.0, 1.0]], [3.0, 1.0])
    assert np.linalg.norm(q) == pytest.approx(1.0)
    assert q[0] > q[1]
    assert weighted_mean([], []) is None
    assert weighted_mean([[1.0, 0.0], [-1.0, 0.0]], [1.0, 1.0]) is None
