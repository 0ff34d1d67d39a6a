"""
Scheduler — periodic housekeeping.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression. The scheduler runs
in a background thread next to the worker pool; the composition root owns
its lifecycle.

Each run is wrapped in a LoggingExecutionContext for timing and
success/failure logging.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

from vc_pipeline.housekeeping import HousekeepingReport

log = structlog.get_logger()

JOB_ID = "vc_pipeline_housekeeping"


def create_scheduler(
    housekeeping_fn: Callable[[], Result[HousekeepingReport]],
    cron: str = "*/15 * * * *",
    run_on_startup: bool = False,
) -> BackgroundScheduler:
    """
    Create an APScheduler that runs housekeeping on a cron schedule.

    Args:
        housekeeping_fn: Zero-argument callable returning Result[HousekeepingReport].
        cron: Standard 5-field cron expression (minute hour dom month dow).
              Default "*/15 * * * *" runs every 15 minutes.
        run_on_startup: If True, execute once immediately.

    Returns:
        A configured BackgroundScheduler (call .start() to begin).
    """
    scheduler = BackgroundScheduler()
    ctx = LoggingExecutionContext(operation="Housekeeping")

    def _job() -> None:
        result = ctx.execute(housekeeping_fn)
        if result.is_success():
            report = result.value()
            log.info(
                "scheduler.housekeeping_completed",
                expired_certificates=report.expired_certificates,
                purged_jobs=report.purged_jobs,
            )
        else:
            log.error("scheduler.housekeeping_failed", failure=result.error().describe())

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
        name="Certificate expiry and job retention",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run")
        _job()

    return scheduler
