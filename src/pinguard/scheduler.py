"""
Scheduler — periodic policy refresh.

Infrastructure layer — uses APScheduler (3.x) in a background thread, driven
by a standard 5-field cron expression. Each run executes the refresh pipeline
inside a LoggingExecutionContext, then checks staleness so a source that keeps
failing raises a "refresh needed" signal instead of going quiet.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from pinguard.domain.models import Policy
from pinguard.railway import LoggingExecutionContext, Result

log = structlog.get_logger()

JOB_ID = "policy_refresh"


def create_scheduler(
    refresh_fn: Callable[[], Result[Policy]],
    staleness_fn: Callable[[], bool] | None = None,
    cron: str = "*/15 * * * *",
    run_on_startup: bool = True,
) -> BackgroundScheduler:
    """
    Create a scheduler that refreshes the policy on a cron schedule.

    Args:
        refresh_fn: Zero-argument callable returning Result[Policy] (the wired pipeline).
        staleness_fn: Called after every run; returns True when a refresh is overdue.
        cron: Standard 5-field cron expression (minute hour dom month dow).
        run_on_startup: If True, run once as soon as the scheduler starts.

    Returns:
        A configured BackgroundScheduler (call .start() to begin).
    """
    scheduler = BackgroundScheduler()
    ctx = LoggingExecutionContext(operation="PolicyRefresh")

    def _job() -> None:
        result = ctx.execute(refresh_fn)
        if result.is_success():
            log.info("scheduler.job_completed", policy_version=result.value().version)
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))
        if staleness_fn is not None:
            staleness_fn()

    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        _job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id=JOB_ID,
        name="Pinning policy refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Refreshing policy as soon as the scheduler starts")
        # No trigger: APScheduler runs the job once, immediately on start.
        scheduler.add_job(_job, id=f"{JOB_ID}_startup", name="Pinning policy refresh (startup)")

    return scheduler
