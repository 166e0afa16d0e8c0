"""
Devices feature: the device registry.

The registry is the persisted record of devices, schedules and the
append-only activity / security-alert logs. Two adapters share one contract:

  SupabaseRegistry  production store (tables: devices, schedules,
                    activity_logs, security_alerts, holidays)
  InMemoryRegistry  single-process store for development and tests

Every device write goes through `update_device()`, a read-modify-write
transaction guarded by the document's `version` field: a writer that lost
the race re-reads and re-applies its mutation instead of clobbering the
other writer's fields.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Callable

from classroom_sync.core.exceptions import ConcurrentUpdateError, RegistryUnavailableError
from classroom_sync.core.security import decrypt_secret, encrypt_secret
from classroom_sync.features.alerts.schemas import SecurityAlert
from classroom_sync.features.devices.models import ActivityEntry, Device, DeviceStatus, normalize_mac
from classroom_sync.features.schedules.schemas import Schedule

logger = logging.getLogger(__name__)

# Mutator contract: edit the device in place; return False to skip the write.
DeviceMutator = Callable[[Device], bool | None]

MAX_UPDATE_ATTEMPTS = 5


class DeviceRegistry:
    """Contract shared by all registry adapters."""

    # ── Devices ──────────────────────────────────────────
    async def ping(self) -> None:
        raise NotImplementedError

    async def get_device(self, mac: str) -> Device | None:
        raise NotImplementedError

    async def list_devices(self) -> list[Device]:
        raise NotImplementedError

    async def get_device_secret(self, mac: str) -> str | None:
        raise NotImplementedError

    async def insert_device(self, device: Device, secret: str | None) -> Device:
        raise NotImplementedError

    async def find_stale_devices(self, cutoff: datetime) -> list[Device]:
        raise NotImplementedError

    async def _compare_and_swap(self, device: Device, expected_version: int) -> bool:
        raise NotImplementedError

    async def update_device(self, mac: str, mutator: DeviceMutator) -> Device | None:
        """Read-modify-write with optimistic retry.

        Returns the stored device after the write (or unchanged when the
        mutator returned False), None if the device doesn't exist.
        """
        mac = normalize_mac(mac)
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            device = await self.get_device(mac)
            if device is None:
                return None
            expected = device.version
            if mutator(device) is False:
                return device
            device.version = expected + 1
            if await self._compare_and_swap(device, expected):
                return device
            logger.debug(f"Version conflict on {mac} (attempt {attempt}), retrying")
        raise ConcurrentUpdateError(mac, MAX_UPDATE_ATTEMPTS)

    # ── Schedules ────────────────────────────────────────
    async def list_schedules(self, enabled_only: bool = True) -> list[Schedule]:
        raise NotImplementedError

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        raise NotImplementedError

    async def save_schedule(self, schedule: Schedule) -> Schedule:
        raise NotImplementedError

    async def update_schedule_fields(self, schedule_id: str, fields: dict) -> None:
        raise NotImplementedError

    # ── Logs ─────────────────────────────────────────────
    async def append_activity(self, entry: ActivityEntry) -> None:
        raise NotImplementedError

    async def has_recent_motion(self, mac: str, since: datetime) -> bool:
        raise NotImplementedError

    async def append_alert(self, alert: SecurityAlert) -> SecurityAlert:
        raise NotImplementedError

    async def get_holiday(self, day: date) -> str | None:
        """Holiday name for `day`, or None."""
        raise NotImplementedError


class InMemoryRegistry(DeviceRegistry):
    """Registry held in process memory. Documents are copied in and out."""

    def __init__(self):
        self._devices: dict[str, Device] = {}
        self._secrets: dict[str, str] = {}
        self._schedules: dict[str, Schedule] = {}
        self._holidays: dict[date, str] = {}
        self.activities: list[ActivityEntry] = []
        self.alerts: list[SecurityAlert] = []

    async def ping(self) -> None:
        return None

    async def get_device(self, mac: str) -> Device | None:
        device = self._devices.get(normalize_mac(mac))
        return device.model_copy(deep=True) if device else None

    async def list_devices(self) -> list[Device]:
        return [d.model_copy(deep=True) for d in self._devices.values()]

    async def get_device_secret(self, mac: str) -> str | None:
        stored = self._secrets.get(normalize_mac(mac))
        return decrypt_secret(stored) if stored else None

    async def insert_device(self, device: Device, secret: str | None) -> Device:
        self._devices[device.mac_address] = device.model_copy(deep=True)
        if secret:
            self._secrets[device.mac_address] = encrypt_secret(secret)
        return device

    async def find_stale_devices(self, cutoff: datetime) -> list[Device]:
        return [
            d.model_copy(deep=True) for d in self._devices.values()
            if d.status == DeviceStatus.ONLINE and (d.last_seen is None or d.last_seen < cutoff)
        ]

    async def _compare_and_swap(self, device: Device, expected_version: int) -> bool:
        current = self._devices.get(device.mac_address)
        if current is None or current.version != expected_version:
            return False
        self._devices[device.mac_address] = device.model_copy(deep=True)
        return True

    async def list_schedules(self, enabled_only: bool = True) -> list[Schedule]:
        return [
            s.model_copy(deep=True) for s in self._schedules.values()
            if s.enabled or not enabled_only
        ]

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        schedule = self._schedules.get(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None

    async def save_schedule(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = schedule.model_copy(deep=True)
        return schedule

    async def update_schedule_fields(self, schedule_id: str, fields: dict) -> None:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            return
        for key, value in fields.items():
            setattr(schedule, key, value)

    async def append_activity(self, entry: ActivityEntry) -> None:
        self.activities.append(entry.model_copy(deep=True))

    async def has_recent_motion(self, mac: str, since: datetime) -> bool:
        mac = normalize_mac(mac)
        return any(
            a.device_id == mac and a.triggered_by == "pir" and a.timestamp >= since
            for a in self.activities
        )

    async def append_alert(self, alert: SecurityAlert) -> SecurityAlert:
        self.alerts.append(alert.model_copy(deep=True))
        return alert

    async def get_holiday(self, day: date) -> str | None:
        return self._holidays.get(day)

    def add_holiday(self, day: date, name: str) -> None:
        self._holidays[day] = name


DEVICE_COLUMNS = (
    "mac_address, name, ip_address, location, classroom, status, last_seen, "
    "switches, motion_sensor, queued_intents, version"
)


class SupabaseRegistry(DeviceRegistry):
    """Registry backed by Supabase tables.

    The supabase client is synchronous; every query runs in a worker thread so
    one device's registry round-trip never blocks another device's messages.
    """

    def __init__(self, db):
        self.db = db

    async def _execute(self, query):
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            raise RegistryUnavailableError(f"Registry query failed: {e}") from e

    @staticmethod
    def _device_row(device: Device) -> dict:
        return device.model_dump(mode="json")

    async def ping(self) -> None:
        await self._execute(self.db.table("devices").select("mac_address").limit(1))

    async def get_device(self, mac: str) -> Device | None:
        res = await self._execute(
            self.db.table("devices").select(DEVICE_COLUMNS).eq("mac_address", normalize_mac(mac)).limit(1)
        )
        return Device.model_validate(res.data[0]) if res.data else None

    async def list_devices(self) -> list[Device]:
        res = await self._execute(self.db.table("devices").select(DEVICE_COLUMNS))
        return [Device.model_validate(row) for row in res.data or []]

    async def get_device_secret(self, mac: str) -> str | None:
        res = await self._execute(
            self.db.table("devices").select("device_secret").eq("mac_address", normalize_mac(mac)).limit(1)
        )
        if not res.data or not res.data[0].get("device_secret"):
            return None
        return decrypt_secret(res.data[0]["device_secret"])

    async def insert_device(self, device: Device, secret: str | None) -> Device:
        row = self._device_row(device)
        if secret:
            row["device_secret"] = encrypt_secret(secret)
        await self._execute(self.db.table("devices").insert(row))
        return device

    async def find_stale_devices(self, cutoff: datetime) -> list[Device]:
        res = await self._execute(
            self.db.table("devices")
            .select(DEVICE_COLUMNS)
            .eq("status", DeviceStatus.ONLINE.value)
            .lt("last_seen", cutoff.isoformat())
        )
        return [Device.model_validate(row) for row in res.data or []]

    async def _compare_and_swap(self, device: Device, expected_version: int) -> bool:
        res = await self._execute(
            self.db.table("devices")
            .update(self._device_row(device))
            .eq("mac_address", device.mac_address)
            .eq("version", expected_version)
        )
        return bool(res.data)

    async def list_schedules(self, enabled_only: bool = True) -> list[Schedule]:
        query = self.db.table("schedules").select("*")
        if enabled_only:
            query = query.eq("enabled", True)
        res = await self._execute(query)
        return [Schedule.model_validate(row) for row in res.data or []]

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        res = await self._execute(self.db.table("schedules").select("*").eq("id", schedule_id).limit(1))
        return Schedule.model_validate(res.data[0]) if res.data else None

    async def save_schedule(self, schedule: Schedule) -> Schedule:
        await self._execute(self.db.table("schedules").upsert(schedule.model_dump(mode="json")))
        return schedule

    async def update_schedule_fields(self, schedule_id: str, fields: dict) -> None:
        payload = {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in fields.items()}
        await self._execute(self.db.table("schedules").update(payload).eq("id", schedule_id))

    async def append_activity(self, entry: ActivityEntry) -> None:
        await self._execute(self.db.table("activity_logs").insert(entry.model_dump(mode="json")))

    async def has_recent_motion(self, mac: str, since: datetime) -> bool:
        res = await self._execute(
            self.db.table("activity_logs")
            .select("device_id")
            .eq("device_id", normalize_mac(mac))
            .eq("triggered_by", "pir")
            .gte("timestamp", since.isoformat())
            .limit(1)
        )
        return bool(res.data)

    async def append_alert(self, alert: SecurityAlert) -> SecurityAlert:
        await self._execute(self.db.table("security_alerts").insert(alert.model_dump(mode="json")))
        return alert

    async def get_holiday(self, day: date) -> str | None:
        res = await self._execute(
            self.db.table("holidays").select("name").eq("date", day.isoformat()).limit(1)
        )
        return res.data[0].get("name") if res.data else None
