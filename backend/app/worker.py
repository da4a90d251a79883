"""ARQ worker: periodic installment grants outside the HTTP request cycle."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from .config import settings
from .database import SessionLocal
from .subscription_schedule import process_due_schedules

logger = logging.getLogger("credits.worker")


def _sweep_due_schedules(limit: int, catch_up: int) -> list[dict[str, Any]]:
    db = SessionLocal()
    try:
        results = process_due_schedules(db, limit=limit, catch_up_per_schedule=catch_up)
    finally:
        db.close()
    return [
        {
            "schedule_id": item.schedule_id,
            "subscription_id": item.subscription_id,
            "user_id": item.user_id,
            "total_granted": item.total_granted,
            "grants_processed": item.grants_processed,
            "remaining_grants": item.remaining_grants,
        }
        for item in results
    ]


async def task_grant_subscription_installments(ctx: dict[str, Any]) -> dict[str, Any]:
    limit = max(1, int(settings.schedule_batch_limit))
    catch_up = max(1, int(settings.schedule_catch_up_per_schedule))
    # Session work is blocking; keep it off the event loop.
    grants = await asyncio.to_thread(_sweep_due_schedules, limit, catch_up)
    processed = sum(item["grants_processed"] for item in grants)
    logger.info(
        "Worker: installment sweep done | job_id=%s | schedules=%s | grants=%s",
        ctx.get("job_id"),
        len(grants),
        processed,
    )
    return {"processed": processed, "schedules_touched": len(grants), "grants": grants}


async def on_worker_startup(ctx: dict[str, Any]) -> None:
    logger.info("ARQ worker started")


async def on_worker_shutdown(ctx: dict[str, Any]) -> None:
    logger.info("ARQ worker shutting down")


class WorkerSettings:
    functions = [task_grant_subscription_installments]
    cron_jobs = [
        cron(
            task_grant_subscription_installments,
            minute=settings.schedule_cron_minute,
            run_at_startup=False,
            unique=True,
        )
    ]
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    on_startup = on_worker_startup
    on_shutdown = on_worker_shutdown
    max_tries = 1
    job_timeout = 300
