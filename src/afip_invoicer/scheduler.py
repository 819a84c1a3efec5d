"""
Scheduler — periodic sweep of expired security tickets.

Infrastructure layer — uses APScheduler (3.x) AsyncIOScheduler so the sweep
coroutine runs on the same event loop as the cache it cleans, without
threads. The interval is fixed at configuration time (5 minutes by default).

A failing sweep is logged and retried on the next tick; it never stops
the scheduler.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

log = structlog.get_logger()

SWEEP_JOB_ID = "ticket_sweep"


def create_sweep_scheduler(
    sweep_fn: Callable[[], Awaitable[int]],
    interval_minutes: int = 5,
) -> AsyncIOScheduler:
    """
    Create an AsyncIOScheduler that runs `sweep_fn` every `interval_minutes`.

    Args:
        sweep_fn: Zero-argument coroutine function returning the number of
                  tickets removed.
        interval_minutes: Minutes between sweeps.

    Returns:
        A configured AsyncIOScheduler (call .start() from a running event loop).
    """
    scheduler = AsyncIOScheduler()

    async def _job() -> None:
        """Run one sweep and log the outcome."""
        try:
            removed = await sweep_fn()
        except Exception:
            log.exception("scheduler.sweep_failed")
            return
        log.debug("scheduler.sweep_completed", removed=removed)

    scheduler.add_job(
        _job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=SWEEP_JOB_ID,
        name="Expired ticket sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    log.info("scheduler.configured", job_id=SWEEP_JOB_ID, interval_minutes=interval_minutes)
    return scheduler
