from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, TypeVar

from fastapi import Request

log = logging.getLogger("newsfeed.core.cancellation")

T = TypeVar("T")


class ClientDisconnected(Exception):
    """The caller went away before the response was ready."""


async def run_while_connected(request: Request, work: Awaitable[T], poll_interval: float = 0.1) -> T:
    """
    Run `work` and cancel it as soon as the client disconnects, so pooled
    connections held by in-flight I/O are released promptly. The partial
    result of a cancelled run is discarded.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                log.info("client disconnected, cancelling %s", request.url.path)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise ClientDisconnected(request.url.path)
    finally:
        if not task.done():
            task.cancel()
