"""Scheduled tasks: sensor collection, alert subscription polling, pairing and link liveness."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from atsight.core.clock import from_epoch
from atsight.core.utils import SENSOR_TO_ENDPOINT_MAP
from atsight.services.alert_service import AlertSubscription
from atsight.services.backend import BackendUnavailable
from atsight.services.emergency import get_emergency_registry
from atsight.services.monitor import ChildMonitor, get_monitor_registry
from atsight.services.sensor_source import SensorDataSource

logger = logging.getLogger(__name__)


def _summary(results: List[Any], total: int) -> Dict[str, int]:
    success = sum(1 for r in results if r is True)
    return {"success": success, "failed": total - success, "total": total}


def _sample_time(reading: Dict[str, Any], monitor: ChildMonitor):
    ts = reading.get("ts", reading.get("timestamp"))
    if ts is None:
        return monitor.clock.now()
    return from_epoch(float(ts))


# Used by: scheduler.py - called every SENSOR_POLL_INTERVAL_SECONDS
async def collect_and_process_child_sensor_data_task(data_source: SensorDataSource) -> Dict[str, Any]:
    """Pull the latest readings for every monitored child and feed them to its monitor."""
    logger.debug("Starting child sensor data collection task...")

    monitors = get_monitor_registry().active()
    if not monitors:
        logger.debug("No children currently monitored - skipping data collection")
        return {"success": 0, "failed": 0, "total": 0, "message": "No children currently monitored"}

    try:
        child_tasks = [
            asyncio.create_task(_process_single_child(monitor, data_source))
            for monitor in monitors
        ]
        results = await asyncio.gather(*child_tasks, return_exceptions=True)

        summary = _summary(results, len(monitors))
        logger.info(
            f"Sensor data collection complete: {summary['success']}/{summary['total']} successful, "
            f"{summary['failed']} failed"
        )
        return summary

    except Exception as e:
        logger.error(f"Fatal error in sensor data collection task: {e}", exc_info=True)
        return {"success": 0, "failed": 0, "total": 0, "error": str(e)}


# Used by: collect_and_process_child_sensor_data_task() - processes one child in parallel
async def _process_single_child(monitor: ChildMonitor, data_source: SensorDataSource) -> bool:
    child_id = monitor.child_id
    generation = monitor.generation
    try:
        sensor_names = list(SENSOR_TO_ENDPOINT_MAP.keys())
        sensor_tasks = [
            asyncio.create_task(data_source.get_sensor_data(sensor, child_id))
            for sensor in sensor_names
        ]
        sensor_results = await asyncio.gather(*sensor_tasks, return_exceptions=True)

        readings: Dict[str, Dict[str, Any]] = {}
        for sensor_name, result in zip(sensor_names, sensor_results):
            if isinstance(result, dict):
                readings[sensor_name] = result
            else:
                logger.debug(
                    f"No {sensor_name} for child {child_id}: "
                    f"{result if isinstance(result, Exception) else 'No data'}"
                )

        if not readings:
            logger.warning(f"No sensor readings available for child {child_id}")
            return False

        # Motion first so back-on checks see the freshest movement
        motion = readings.get("motion")
        if motion and "magnitude" in motion:
            await monitor.on_motion(float(motion["magnitude"]), _sample_time(motion, monitor), generation)

        heart_rate = readings.get("heart_rate")
        if heart_rate and "bpm" in heart_rate:
            await monitor.on_heart_rate(float(heart_rate["bpm"]), _sample_time(heart_rate, monitor), generation)

        battery = readings.get("battery")
        if battery and "level" in battery:
            await monitor.on_battery(battery["level"], generation)

        location = readings.get("location")
        if location and "lat" in location and "lon" in location:
            await monitor.on_location(
                float(location["lat"]),
                float(location["lon"]),
                float(location.get("accuracy", 0.0)),
                _sample_time(location, monitor),
                generation,
            )

        logger.debug(f"Processed {len(readings)}/{len(sensor_names)} sensors for child {child_id}")
        return True

    except Exception as e:
        logger.error(f"Error processing sensor data for child {child_id}: {e}", exc_info=True)
        return False


async def _poll_subscription(subscription: AlertSubscription) -> bool:
    try:
        await subscription.poll()
        return True
    except BackendUnavailable as e:
        logger.warning(f"Alert poll failed for {subscription.subscriber_id}: {e}")
        return False


async def _poll_halt(monitor: ChildMonitor) -> bool:
    try:
        await monitor.poll_halt(monitor.generation)
        return True
    except BackendUnavailable as e:
        logger.warning(f"HALT poll failed for child {monitor.child_id}: {e}")
        return False


# Used by: scheduler.py - called every ALERT_POLL_INTERVAL_SECONDS
async def poll_alert_subscriptions_task() -> Dict[str, int]:
    """Guardian SOS subscriptions plus each monitored watch's HALT subscription."""
    subscriptions = get_emergency_registry().subscriptions()
    monitors = get_monitor_registry().active()

    jobs = [_poll_subscription(s) for s in subscriptions] + [_poll_halt(m) for m in monitors]
    if not jobs:
        return {"success": 0, "failed": 0, "total": 0}

    results = await asyncio.gather(*jobs, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error(f"Unexpected error polling alerts: {result}")
    return _summary(results, len(jobs))


# Used by: scheduler.py - called every PAIRING_POLL_INTERVAL_SECONDS
async def poll_pairing_task() -> Dict[str, int]:
    monitors = [
        m for m in get_monitor_registry().active()
        if m.pairing.is_polling or m.pairing.dismiss_at is not None
    ]
    if not monitors:
        return {"success": 0, "failed": 0, "total": 0}

    async def tick(monitor: ChildMonitor) -> bool:
        await monitor.tick_pairing(monitor.generation)
        return not monitor.pairing.reconnecting

    results = await asyncio.gather(*(tick(m) for m in monitors), return_exceptions=True)
    for monitor, result in zip(monitors, results):
        if isinstance(result, Exception):
            logger.error(f"Pairing tick failed for child {monitor.child_id}: {result}")
    return _summary(results, len(monitors))


# Used by: scheduler.py - called every LINK_LIVENESS_INTERVAL_SECONDS
async def check_links_task() -> Optional[Dict[str, List[str]]]:
    """Returns child_id -> removed guardian ids, only for children that lost a link."""
    monitors = [m for m in get_monitor_registry().active() if m.pairing.guardians]
    if not monitors:
        return None

    results = await asyncio.gather(
        *(m.check_links(m.generation) for m in monitors), return_exceptions=True
    )
    removed: Dict[str, List[str]] = {}
    for monitor, result in zip(monitors, results):
        if isinstance(result, Exception):
            logger.error(f"Link liveness check failed for child {monitor.child_id}: {result}")
        elif result:
            removed[monitor.child_id] = result
    return removed
