# newsfeed/jobs/scheduler.py
from __future__ import annotations
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from newsfeed.core.errors import FeedError
from newsfeed.services.ingest_worker import IngestionWorker

log = logging.getLogger("newsfeed.jobs.scheduler")


def create_scheduler(worker: IngestionWorker, interval_seconds: int) -> AsyncIOScheduler:
    """
    创建并返回 APScheduler（不自动启动），只有一个任务：
    - ingest_pass：每 interval_seconds 跑一轮 IngestionWorker.run_pass
    上一轮没跑完时不叠加（max_instances=1），错过的触发合并为一次（coalesce）。
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    async def _job_ingest():
        try:
            report = await worker.run_pass()
        except FeedError as e:
            # 整轮失败（如存储不可用）：下个周期自动重试
            log.warning("[JOB] ingest pass aborted: %s", e)
            return
        log.info("[JOB] ingest -> indexed %d failed %d", report.indexed, report.failed)

    scheduler.add_job(
        _job_ingest,
        trigger="interval",
        seconds=int(interval_seconds),
        id="ingest_pass",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
