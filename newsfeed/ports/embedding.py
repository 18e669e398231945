from __future__ import annotations
from dataclasses import dataclass
from typing import Protocol, List, Optional, Union


@dataclass(frozen=True)
class Ok:
    vector: List[float]


@dataclass(frozen=True)
class Retryable:
    reason: str


@dataclass(frozen=True)
class Fatal:
    reason: str
    invalid_input: bool = False


EmbedResult = Union[Ok, Retryable, Fatal]


class EmbeddingClientPort(Protocol):
    """文本 -> 定长向量。一次调用，不在内部重试；重试由调用方按结果类型决定。"""
    dim: int
    model_version: str

    async def embed(self, text: str) -> EmbedResult: ...

    async def aclose(self) -> None: ...

    def ping_detail(self) -> tuple[bool, Optional[str]]: ...
