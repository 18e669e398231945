from __future__ import annotations
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from newsfeed.core.cancellation import run_while_connected
from newsfeed.deps import Services, bearer_token, get_ranker, get_services
from newsfeed.domain.models import FeedResponse, InteractionKind
from newsfeed.services.feed_ranker import FeedRanker

router = APIRouter(tags=["feed"])


class InteractionIn(BaseModel):
    article_id: uuid.UUID
    kind: InteractionKind


@router.get("/feed", response_model=FeedResponse)
async def get_feed(
    request: Request,
    page_size: Optional[int] = Query(None, description="defaults to FEED_DEFAULT_PAGE_SIZE"),
    cursor: Optional[str] = Query(None),
    token: str = Depends(bearer_token),
    svc: Services = Depends(get_services),
):
    size = svc.settings.FEED_DEFAULT_PAGE_SIZE if page_size is None else page_size
    # 客户端断开时取消整条流水线，释放连接池；半成品结果直接丢弃
    return await run_while_connected(request, svc.ranker.feed(token, size, cursor))


@router.post("/feed/interactions", status_code=201)
async def record_interaction(
    body: InteractionIn,
    token: str = Depends(bearer_token),
    ranker: FeedRanker = Depends(get_ranker),
):
    it = await ranker.record(token, body.article_id, body.kind)
    return {"ok": True, "interaction": it.model_dump(mode="json")}
