"""APScheduler setup for per-session periodic ticks."""

import logging

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})


def schedule_session_ticks(
    scheduler: AsyncIOScheduler,
    engine,
    session_id: str,
    generation: int,
    position_seconds: float,
    eta_seconds: float,
) -> list[Job]:
    """Create the position and ETA interval jobs for one session generation.

    Job ids carry the generation so a restarted session never reuses the
    handles of an earlier one.
    """
    position_job = scheduler.add_job(
        engine.tick_position,
        "interval",
        seconds=position_seconds,
        args=[session_id, generation],
        id=f"{session_id}:position:{generation}",
        name=f"Advance simulated position ({session_id})",
    )
    eta_job = scheduler.add_job(
        engine.tick_eta,
        "interval",
        seconds=eta_seconds,
        args=[session_id, generation],
        id=f"{session_id}:eta:{generation}",
        name=f"Count down ETA ({session_id})",
    )
    return [position_job, eta_job]


def cancel_jobs(jobs: list[Job]) -> None:
    for job in jobs:
        try:
            job.remove()
        except JobLookupError:
            logger.debug("Job %s already removed", job.id)


def schedule_idle_sweep(scheduler: AsyncIOScheduler, engine, seconds: float) -> Job:
    """Periodically close sessions nobody is watching or calling."""
    return scheduler.add_job(
        engine.reap_idle,
        "interval",
        seconds=seconds,
        id="tracking:idle-sweep",
        name="Close idle tracking sessions",
        replace_existing=True,
    )
