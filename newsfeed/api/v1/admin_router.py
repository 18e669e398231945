from __future__ import annotations
import uuid
from typing import List

from fastapi import APIRouter, Depends

from newsfeed.deps import get_worker, require_admin
from newsfeed.domain.models import IncomingArticle
from newsfeed.services.ingest_worker import IngestionWorker

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/articles", status_code=202)
async def submit_articles(items: List[IncomingArticle], worker: IngestionWorker = Depends(get_worker)):
    """Hand-off point for the sourcing system; articles are stored on the next ingestion pass."""
    n = worker.submit(items)
    return {"ok": True, "queued": n, "ids": [str(it.id) for it in items]}


@router.post("/ingest/run")
async def run_ingest(worker: IngestionWorker = Depends(get_worker)):
    report = await worker.run_pass()
    return {"ok": True, "report": report.as_dict()}


@router.get("/ingest/failures")
async def ingest_failures(worker: IngestionWorker = Depends(get_worker)):
    arts = await worker.failures()
    items = [
        {
            "id": str(a.id),
            "title": a.title,
            "source": a.source,
            "state": a.ingest_state.value,
            "attempts": a.attempts,
            "last_error": a.last_error,
        }
        for a in arts
    ]
    return {"ok": True, "count": len(items), "items": items}


@router.post("/articles/{article_id}/retract")
async def retract_article(article_id: uuid.UUID, worker: IngestionWorker = Depends(get_worker)):
    await worker.retract(article_id)
    return {"ok": True, "id": str(article_id), "retracted": True}
