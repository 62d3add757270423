"""
APScheduler setup - four shared recurring jobs, plus one off-wrist job per monitored child.

Jobs:
  - Sensor collection:  every SENSOR_POLL_INTERVAL_SECONDS (monitored children only)
  - Alert polling:      every ALERT_POLL_INTERVAL_SECONDS (SOS and HALT subscriptions)
  - Pairing poll:       every PAIRING_POLL_INTERVAL_SECONDS (children showing a PIN)
  - Link liveness:      every LINK_LIVENESS_INTERVAL_SECONDS (children with guardians)
  - Off-wrist:          every OFF_WRIST_EVAL_INTERVAL_SECONDS, added by ChildMonitor.start
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from atsight.core.constants import LINK_LIVENESS_INTERVAL_SECONDS, PAIRING_POLL_INTERVAL_SECONDS
from atsight.core.settings import settings
from atsight.core.utils import SENSOR_TO_ENDPOINT_MAP
from atsight.services.monitor import get_monitor_registry
from atsight.services.sensor_source import HttpSensorSource
from atsight.services.tasks import (
    check_links_task,
    collect_and_process_child_sensor_data_task,
    poll_alert_subscriptions_task,
    poll_pairing_task,
)

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

_data_source = HttpSensorSource(
    base_url=settings.SENSOR_API_BASE_URL,
    endpoint_map=SENSOR_TO_ENDPOINT_MAP,
    timeout_seconds=settings.SENSOR_FETCH_TIMEOUT_SECONDS,
)


# Used by: start_scheduler
async def _run_child_sensor_collection():
    await collect_and_process_child_sensor_data_task(_data_source)


# Used by: api/sensor_events.py (location refresh)
def get_sensor_source() -> HttpSensorSource:
    return _data_source


def _add_interval_job(func, seconds: float, job_id: str, name: str) -> None:
    scheduler.add_job(
        func,
        trigger=IntervalTrigger(seconds=seconds),
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


# Used by: main (lifespan startup)
async def start_scheduler():
    """Initialize and start APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return

    logger.info("Initializing scheduler...")

    scheduler = AsyncIOScheduler()

    _add_interval_job(
        _run_child_sensor_collection,
        settings.SENSOR_POLL_INTERVAL_SECONDS,
        "child_sensor_collection",
        "Collect sensor data for monitored children",
    )
    _add_interval_job(
        poll_alert_subscriptions_task,
        settings.ALERT_POLL_INTERVAL_SECONDS,
        "alert_subscriptions_poll",
        "Poll SOS and HALT alert subscriptions",
    )
    _add_interval_job(
        poll_pairing_task,
        PAIRING_POLL_INTERVAL_SECONDS,
        "pairing_poll",
        "Poll pairing status for children showing a PIN",
    )
    _add_interval_job(
        check_links_task,
        LINK_LIVENESS_INTERVAL_SECONDS,
        "link_liveness",
        "Drop guardians whose link record was removed",
    )

    scheduler.start()
    get_monitor_registry().attach_scheduler(scheduler)
    logger.info(
        f"Scheduler started successfully:\n"
        f"  - Sensor collection: every {settings.SENSOR_POLL_INTERVAL_SECONDS} seconds\n"
        f"  - Alert polling: every {settings.ALERT_POLL_INTERVAL_SECONDS} seconds\n"
        f"  - Pairing poll: every {PAIRING_POLL_INTERVAL_SECONDS} seconds\n"
        f"  - Link liveness: every {LINK_LIVENESS_INTERVAL_SECONDS} seconds"
    )


# Used by: main (lifespan shutdown)
async def stop_scheduler():
    global scheduler

    if scheduler is None:
        logger.warning("Scheduler is not running")
        return

    logger.info("Shutting down scheduler...")
    get_monitor_registry().attach_scheduler(None)
    scheduler.shutdown(wait=True)
    scheduler = None
    logger.info("Scheduler stopped")


# Used by: main.py (GET /health)
def get_scheduler_status() -> dict:
    if scheduler is None:
        return {
            "running": False,
            "jobs": []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })

    return {
        "running": scheduler.running,
        "jobs": jobs
    }
