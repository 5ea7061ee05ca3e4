from __future__ import annotations

import dataclasses

from musicscheduler import config, scheduler


def test_jobs_follow_configured_intervals():
    custom = dataclasses.replace(
        config.settings,
        series_extension_interval_hours=3,
        invitation_sweep_interval_hours=5,
        sqlite_vacuum_hours=48,
    )

    jobs = {job.job_id: job.hours for job in scheduler.maintenance_jobs(custom)}

    assert jobs == {"series-extension": 3, "invitation-sweep": 5, "vacuum": 48}


def test_build_scheduler_registers_every_job():
    background = scheduler.build_scheduler()
    assert sorted(job.id for job in background.get_jobs()) == [
        "invitation-sweep",
        "series-extension",
        "vacuum",
    ]
    assert not background.running
