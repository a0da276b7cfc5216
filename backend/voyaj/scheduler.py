"""
APScheduler setup for the periodic nudge sweep.

One in-process interval job is enough: the sweep is idempotent per trip
(minimum gap between nudges) and cheap when nothing is due.
"""

import logging
import os
from typing import Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from voyaj.config import get_settings
from voyaj.services.nudges import NudgeScheduler

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None
_nudger: Optional[NudgeScheduler] = None

NUDGE_JOB_ID = "nudge_sweep"


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the global scheduler instance."""
    global scheduler
    if scheduler is None:
        tz = os.environ.get("TZ", "UTC")
        logger.info(f"Scheduler using timezone: {tz}")
        scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            timezone=tz,
        )
        _setup_scheduled_jobs(scheduler)
    return scheduler


def _setup_scheduled_jobs(instance: AsyncIOScheduler):
    settings = get_settings()
    minutes = settings.nudge_sweep_minutes
    instance.add_job(
        run_nudge_sweep,
        trigger=IntervalTrigger(minutes=minutes),
        id=NUDGE_JOB_ID,
        name=f"Nudge sweep (every {minutes} min)",
        replace_existing=True,
        max_instances=1,
    )
    logger.info(f"Scheduled jobs configured: nudge sweep every {minutes} minutes")


async def run_nudge_sweep() -> Optional[dict]:
    """Run one sweep over active trips. Errors are logged, never raised into APScheduler."""
    if _nudger is None:
        logger.warning("Nudge sweep fired before a NudgeScheduler was registered")
        return None
    try:
        summary = await _nudger.sweep()
    except Exception as e:
        logger.exception(f"❌ Nudge sweep failed: {e}")
        return None
    return {
        "checked": summary.checked,
        "nudged": summary.nudged,
        "advanced": summary.advanced,
        "abandoned": summary.abandoned,
        "errors": summary.errors,
    }


def start_scheduler(nudger: NudgeScheduler):
    """Start the scheduler (call this from FastAPI startup)."""
    global _nudger
    _nudger = nudger
    instance = get_scheduler()
    if instance.running:
        logger.warning("Scheduler already running")
        return
    instance.start()
    logger.info("APScheduler started successfully")
    for job in instance.get_jobs():
        logger.info(f"Next '{job.name}': {job.next_run_time}")


def stop_scheduler():
    """Stop the scheduler (call this from FastAPI shutdown)."""
    global scheduler, _nudger
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")
    scheduler = None
    _nudger = None


def get_scheduler_status() -> dict:
    if scheduler is None or not scheduler.running:
        return {"running": False, "jobs": [], "next_run": None}

    jobs = []
    next_run = None
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })
        if job.next_run_time and (next_run is None or job.next_run_time < next_run):
            next_run = job.next_run_time

    return {
        "running": True,
        "jobs": jobs,
        "next_run": next_run.isoformat() if next_run else None,
    }
