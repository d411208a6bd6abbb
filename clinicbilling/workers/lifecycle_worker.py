from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from clinicbilling.core.config import get_settings
from clinicbilling.core.logging import configure_logging
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.services.sweep import advance_subscription, run_lifecycle_sweep_cycle


logger = logging.getLogger(__name__)


async def lifecycle_sweep(ctx) -> dict[str, Any]:
    # Cron entry point; every worker may run it since each advance is idempotent.
    stats = await run_lifecycle_sweep_cycle()
    logger.info("lifecycle_sweep_job job_id=%s stats=%s", ctx.get("job_id"), stats)
    return stats


async def advance_one(ctx, subscription_id: str) -> str:
    # On-demand advance for a single clinic, e.g. right after a failed webhook.
    async with SessionLocal() as session:
        result = await advance_subscription(session, subscription_id)
    return result.outcome


def _sweep_minutes() -> set[int]:
    step = max(1, int(get_settings().sweep_interval_s) // 60)
    return set(range(0, 60, step))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("lifecycle_worker_started queue=%s", get_settings().lifecycle_queue_name)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.lifecycle_queue_name
    functions = [advance_one]
    cron_jobs = [cron(lifecycle_sweep, minute=_sweep_minutes(), run_at_startup=True)]
    on_startup = _startup
