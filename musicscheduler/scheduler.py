"""Background jobs that keep series materialized and invitations current."""

from __future__ import annotations

import logging
from typing import Callable, NamedTuple

from apscheduler.schedulers.background import BackgroundScheduler

from .config import Settings, settings
from .maintenance import extend_all_series, sweep_expired_invitations, vacuum_database

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


class MaintenanceJob(NamedTuple):
    job_id: str
    func: Callable[[], object]
    hours: int


def maintenance_jobs(config: Settings | None = None) -> list[MaintenanceJob]:
    config = config or settings
    return [
        MaintenanceJob("series-extension", extend_all_series, config.series_extension_interval_hours),
        MaintenanceJob(
            "invitation-sweep", sweep_expired_invitations, config.invitation_sweep_interval_hours
        ),
        MaintenanceJob("vacuum", vacuum_database, config.sqlite_vacuum_hours),
    ]


def build_scheduler(config: Settings | None = None) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    for job in maintenance_jobs(config):
        # One run at a time; missed runs collapse into one.
        scheduler.add_job(
            job.func,
            "interval",
            hours=job.hours,
            id=job.job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    return scheduler


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = build_scheduler()
    scheduler.start()
    logger.info(
        "Scheduler started with jobs: %s",
        ", ".join(job.id for job in scheduler.get_jobs()),
    )
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
