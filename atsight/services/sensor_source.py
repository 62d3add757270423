"""HTTP client for the watch companion API: latest raw readings per child."""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import aiohttp

from atsight.core.constants import LOCATION_MAX_RETRIES, LOCATION_RETRY_BASE_SECONDS
from atsight.services.retry import retry_async

logger = logging.getLogger(__name__)


class LocationPermissionDenied(Exception):
    pass


# Used by: tasks.py, monitor.py (type hints)
class SensorDataSource(Protocol):
    async def get_sensor_data(self, sensor_name: str, child_id: str) -> Optional[Dict[str, Any]]:
        ...


# Used by: scheduler.py (module-level singleton), api/sensor_events.py (location refresh)
class HttpSensorSource:
    """Companion-API sensor source; endpoints contain a {child_id} placeholder."""

    def __init__(self, base_url: str, endpoint_map: Dict[str, str], timeout_seconds: int = 5):
        self.base_url = base_url
        self.endpoint_map = endpoint_map
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get(self, sensor_name: str, child_id: str) -> Optional[Dict[str, Any]]:
        endpoint = self.endpoint_map[sensor_name].format(child_id=child_id)
        url = self.base_url + endpoint

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as response:
                if response.status == 200:
                    data = await response.json()
                    logger.debug(f"Fetched {sensor_name} for child {child_id}: {data}")
                    return data
                if response.status == 403:
                    raise LocationPermissionDenied(f"{sensor_name} access denied for child {child_id}")
                logger.warning(f"Sensor {sensor_name} for child {child_id} returned status {response.status}")
                return None

    # Used by: tasks.py (_process_single_child)
    async def get_sensor_data(self, sensor_name: str, child_id: str) -> Optional[Dict[str, Any]]:
        if sensor_name not in self.endpoint_map:
            logger.error(f"Unknown sensor: {sensor_name}")
            return None

        try:
            return await self._get(sensor_name, child_id)
        except LocationPermissionDenied as e:
            logger.info(str(e))
            return None
        except aiohttp.ClientError as e:
            logger.error(f"Network error fetching {sensor_name} for child {child_id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching {sensor_name} for child {child_id}: {e}")
            return None

    # Used by: api/sensor_events.py (POST /watch/{child_id}/location/refresh)
    async def request_location_fix(
        self,
        child_id: str,
        retries: int = LOCATION_MAX_RETRIES,
        base_delay: float = LOCATION_RETRY_BASE_SECONDS,
    ) -> Optional[Dict[str, Any]]:
        """One-shot fix. Permission denial resolves to None without retrying."""
        async def attempt():
            return await self._get("location", child_id)

        try:
            return await retry_async(
                attempt,
                retries=retries,
                base_delay=base_delay,
                retry_on=(aiohttp.ClientError, asyncio.TimeoutError),
            )
        except LocationPermissionDenied as e:
            logger.info(f"No location fix: {e}")
            return None
