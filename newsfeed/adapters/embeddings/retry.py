from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from newsfeed.ports.embedding import EmbedResult, EmbeddingClientPort, Retryable

log = logging.getLogger("newsfeed.adapters.embeddings.retry")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    base: float = 0.2     # seconds
    factor: float = 2.0
    attempts: int = 3
    jitter: float = 0.2   # ±20%

    def wait(self, rng: Optional[random.Random] = None) -> Callable[[RetryCallState], float]:
        """tenacity wait: base * factor^(n-1) before retry n, scaled by a ±jitter factor."""
        backoff = wait_exponential(multiplier=self.base, exp_base=self.factor)
        draw = rng or random

        def _wait(state: RetryCallState) -> float:
            return max(0.0, backoff(state) * (1.0 + draw.uniform(-self.jitter, self.jitter)))
        return _wait


@dataclass(frozen=True)
class EmbedOutcome:
    result: EmbedResult
    attempts: int


def _is_retryable(result: EmbedResult) -> bool:
    return isinstance(result, Retryable)


def _log_retry(state: RetryCallState) -> None:
    log.warning("[embed] attempt %d retryable: %s, sleeping %.2fs",
                state.attempt_number, state.outcome.result().reason, state.upcoming_sleep)


def _last_result(state: RetryCallState) -> EmbedResult:
    # 预算用完：把最后一个 Retryable 当结果交回去，而不是抛 RetryError
    return state.outcome.result()


async def embed_with_retry(client: EmbeddingClientPort, text: str, policy: RetryPolicy,
                           sleep: Sleep = asyncio.sleep, rng: Optional[random.Random] = None) -> EmbedOutcome:
    """
    按结果类型驱动重试：只有 Retryable 会退避后再试；Ok / Fatal 立即返回。
    预算用完时返回最后一个 Retryable，由调用方决定如何落状态。
    """
    calls = 0

    async def _attempt() -> EmbedResult:
        nonlocal calls
        calls += 1
        return await client.embed(text)

    retrying = AsyncRetrying(
        retry=retry_if_result(_is_retryable),
        stop=stop_after_attempt(policy.attempts),
        wait=policy.wait(rng),
        sleep=sleep,
        before_sleep=_log_retry,
        retry_error_callback=_last_result,
    )
    result = await retrying(_attempt)
    return EmbedOutcome(result, calls)
