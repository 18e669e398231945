from __future__ import annotations
from typing import Optional, Sequence
import math
import numpy as np
from datetime import datetime, timezone


def l2_normalize(v) -> Optional[np.ndarray]:
    arr = np.asarray(v, dtype=np.float32)
    n = float(np.linalg.norm(arr))
    if n == 0.0 or not math.isfinite(n):
        return None
    return arr / n


def age_hours(ts: datetime, now: datetime) -> float:
    # 兼容 naive/aware：naive 视为 UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return max((now - ts).total_seconds() / 3600.0, 0.0)


def exp_decay(hours: float, lam: float) -> float:
    """exp(-λ·age)，age 单位小时；未来时间按 0 处理。"""
    return math.exp(-lam * max(hours, 0.0))


def recency_score(published_at: datetime, now: datetime, lam: float) -> float:
    return exp_decay(age_hours(published_at, now), lam)


def weighted_mean(vectors: Sequence[Sequence[float]], weights: Sequence[float]) -> Optional[np.ndarray]:
    """Weighted average of vectors, L2-normalized. None when nothing usable remains."""
    if not vectors:
        return None
    w = np.asarray(weights, dtype=np.float64)
    if w.sum() <= 0:
        return None
    mat = np.asarray(vectors, dtype=np.float64)
    mean = (mat * w[:, None]).sum(axis=0) / w.sum()
    return l2_normalize(mean)
