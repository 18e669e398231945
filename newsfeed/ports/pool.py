from __future__ import annotations
from typing import Protocol, AsyncContextManager, Any


class PoolHandle(Protocol):
    """有界连接池句柄：拿不到连接（超时）时抛 ResourceExhausted，而不是无限排队。"""
    name: str

    def connection(self) -> AsyncContextManager[Any]: ...

    async def dispose(self) -> None: ...
