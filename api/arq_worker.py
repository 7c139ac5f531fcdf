"""
Casework — arq Worker Entry Point

CMD target for the worker container. Runs the reconciliation sweep as
an arq cron job so stale SUBMITTED cases are demoted without a user
request, and exposes the same sweep as an on-demand job.

Usage:
    python -m api.arq_worker

    # Or via arq CLI:
    arq api.arq_worker.WorkerSettings

Environment:
    REDIS_URL        — redis://localhost:6379 by default
    MDT_CONFIG       — config file (default config/casework.yaml)
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor

from services.config import get_config_value, load_config

logger = logging.getLogger("casework.arq_worker")

_CONFIG = load_config(os.environ.get("MDT_CONFIG", "config/casework.yaml"))


async def run_reconciliation_sweep(ctx: dict) -> dict:
    """
    arq task function. Runs the sweep in the thread pool so the SQLite
    work does not block the event loop.
    """
    import asyncio

    loop = asyncio.get_running_loop()
    pool: ThreadPoolExecutor = ctx.get("pool")
    engine = ctx["engine"]

    result = await loop.run_in_executor(pool, engine.run_reconciliation_sweep)
    logger.info(
        "Sweep demoted %d of %d candidates",
        result.cases_demoted, result.candidates_scanned,
    )
    return result.to_dict()


async def startup(ctx: dict):
    """arq startup hook: thread pool and engine."""
    from casework.runtime import CaseWorkflowEngine
    from services.logging import configure_logging_from_config

    configure_logging_from_config(_CONFIG)
    max_workers = int(get_config_value("worker.max_jobs", _CONFIG, 4))
    ctx["pool"] = ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="casework_worker",
    )
    ctx["engine"] = CaseWorkflowEngine.from_config(_CONFIG)
    logger.info("arq worker started: max_workers=%d", max_workers)


async def shutdown(ctx: dict):
    """arq shutdown hook: release pool and engine."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    engine = ctx.get("engine")
    if engine:
        engine.close()
    logger.info("arq worker shutdown complete")


def sweep_minutes(interval_seconds: float) -> set[int]:
    """Cron minute set approximating the configured sweep interval."""
    step = max(1, int(interval_seconds) // 60)
    if step >= 60:
        return {0}
    return set(range(0, 60, step))


def _cron_jobs() -> list:
    from arq import cron

    interval = float(get_config_value("sweep.interval_seconds", _CONFIG, 300))
    return [
        cron(
            run_reconciliation_sweep,
            minute=sweep_minutes(interval),
            run_at_startup=True,
            unique=True,
        ),
    ]


def _redis_settings():
    from arq.connections import RedisSettings

    redis_url = os.environ.get(
        "REDIS_URL", get_config_value("worker.redis_url", _CONFIG, "redis://localhost:6379")
    )
    return RedisSettings.from_dsn(redis_url)


class WorkerSettings:
    """arq worker configuration."""
    functions = [run_reconciliation_sweep]
    cron_jobs = _cron_jobs()
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = int(get_config_value("worker.max_jobs", _CONFIG, 4))
    job_timeout = 300
    redis_settings = _redis_settings()


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)
