"""
Schedules feature: holiday calendar collaborator.

Schedules with `check_holidays` ask the calendar before firing. The calendar
reads the registry's `holidays` table; a lookup failure counts as "not a
holiday" so automation keeps running.
"""

import logging
from datetime import date

from classroom_sync.features.devices.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class HolidayCalendar:
    def __init__(self, registry: DeviceRegistry):
        self.registry = registry

    async def check(self, day: date) -> str | None:
        """Returns the holiday name, or None on a regular day."""
        try:
            return await self.registry.get_holiday(day)
        except Exception as e:
            logger.warning(f"Holiday lookup failed for {day.isoformat()}: {e}")
            return None
