"""
Schedules feature: Schedule Engine.

Compiles Schedule documents into APScheduler jobs and applies them when they
fire. Schedule times are local to SCHEDULE_UTC_OFFSET_MINUTES (Asia/Kolkata
by default).

Every compile bumps the schedule's generation; a job carries the generation
it was compiled with, and a firing whose generation has been superseded does
nothing. Auto-off timers are one-shot date jobs, tracked per schedule so that
removing the schedule revokes them.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from classroom_sync.config import Settings, get_settings
from classroom_sync.core.events import DeviceEventPublisher
from classroom_sync.core.exceptions import ScheduleCompileError
from classroom_sync.features.alerts.schemas import AlertSeverity, AlertType
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.commands.dispatcher import CommandDispatcher
from classroom_sync.features.devices.models import Device, normalize_mac, utc_now
from classroom_sync.features.devices.registry import DeviceRegistry
from classroom_sync.features.schedules.holidays import HolidayCalendar
from classroom_sync.features.schedules.schemas import (
    Schedule,
    ScheduleAction,
    ScheduleType,
    SwitchRef,
)

logger = logging.getLogger(__name__)

# Schedule.days uses cron numbering: 0 = Sunday
DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

SYNC_JOB_ID = "sync_schedules_task"


def schedule_timezone(settings: Settings) -> timezone:
    return timezone(timedelta(minutes=settings.SCHEDULE_UTC_OFFSET_MINUTES))


def next_occurrence(hour: int, minute: int, now: datetime) -> datetime:
    """First HH:MM strictly after `now`, in `now`'s timezone."""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def job_id_for(schedule_id: str) -> str:
    return f"schedule:{schedule_id}"


def auto_off_job_id(schedule_id: str, device_id: str, switch_id: str) -> str:
    return f"autooff:{schedule_id}:{device_id}:{switch_id}"


class ScheduleEngine:
    def __init__(
        self,
        registry: DeviceRegistry,
        alerts: AlertService,
        events: DeviceEventPublisher,
        dispatcher: CommandDispatcher,
        calendar: HolidayCalendar,
        scheduler,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.alerts = alerts
        self.events = events
        self.dispatcher = dispatcher
        self.calendar = calendar
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.tz = schedule_timezone(self.settings)

        self._generations: dict[str, int] = {}
        self._fingerprints: dict[str, str] = {}
        self._auto_off_jobs: dict[str, set[str]] = {}

    # ── Compile ──────────────────────────────────────────

    def build_trigger(self, schedule: Schedule, now: datetime | None = None):
        hour, minute = schedule.hour_minute
        try:
            if schedule.type == ScheduleType.DAILY:
                return CronTrigger(hour=hour, minute=minute, timezone=self.tz)
            if schedule.type == ScheduleType.WEEKLY:
                days = ",".join(DAY_NAMES[d] for d in schedule.days)
                return CronTrigger(day_of_week=days, hour=hour, minute=minute, timezone=self.tz)
            if schedule.type == ScheduleType.ONCE:
                now = (now or datetime.now(self.tz)).astimezone(self.tz)
                return DateTrigger(run_date=next_occurrence(hour, minute, now), timezone=self.tz)
        except (ValueError, TypeError, IndexError) as e:
            raise ScheduleCompileError(schedule.id, str(e))
        raise ScheduleCompileError(schedule.id, f"Unsupported schedule type '{schedule.type}'")

    def generation(self, schedule_id: str) -> int:
        return self._generations.get(schedule_id, 0)

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass  # already fired or never scheduled

    def add_schedule(self, schedule: Schedule) -> int | None:
        """Compile (or recompile) a schedule. Returns its new generation."""
        if not schedule.enabled:
            self.remove_schedule(schedule.id)
            return None

        trigger = self.build_trigger(schedule)
        generation = self.generation(schedule.id) + 1
        self._generations[schedule.id] = generation

        job_id = job_id_for(schedule.id)
        self._remove_job(job_id)
        self.scheduler.add_job(
            self.fire,
            trigger=trigger,
            args=[schedule.id, generation],
            id=job_id,
            replace_existing=True,
        )
        self._fingerprints[schedule.id] = schedule.fingerprint()
        logger.info(f"🔔 Scheduled '{schedule.name}' ({schedule.type.value} {schedule.time} {schedule.action.value})")
        return generation

    def update_schedule(self, schedule: Schedule) -> int | None:
        return self.add_schedule(schedule)

    def _unschedule(self, schedule_id: str) -> None:
        """Drop the trigger only; armed auto-off jobs stay."""
        self._generations[schedule_id] = self.generation(schedule_id) + 1
        self._remove_job(job_id_for(schedule_id))
        self._fingerprints.pop(schedule_id, None)

    def remove_schedule(self, schedule_id: str) -> None:
        self._unschedule(schedule_id)
        for job_id in self._auto_off_jobs.pop(schedule_id, set()):
            self._remove_job(job_id)
        logger.info(f"🔕 Removed schedule {schedule_id}")

    def is_scheduled(self, schedule_id: str) -> bool:
        return self.scheduler.get_job(job_id_for(schedule_id)) is not None

    async def load_schedules(self) -> int:
        schedules = await self.registry.list_schedules(enabled_only=True)
        loaded = 0
        for schedule in schedules:
            try:
                self.add_schedule(schedule)
                loaded += 1
            except ScheduleCompileError as e:
                logger.error(f"❌ {e.message}: {e.detail}")
        logger.info(f"📅 Loaded {loaded} active schedule(s)")
        return loaded

    async def sync_schedules(self) -> None:
        """Reload from the registry: compile new / changed, drop vanished or disabled."""
        try:
            schedules = await self.registry.list_schedules(enabled_only=True)
        except Exception as e:
            logger.error(f"❌ Schedule sync failed: {e}")
            return

        seen = set()
        changed = 0
        for schedule in schedules:
            seen.add(schedule.id)
            if self._fingerprints.get(schedule.id) == schedule.fingerprint():
                continue
            try:
                self.add_schedule(schedule)
                changed += 1
            except ScheduleCompileError as e:
                logger.error(f"❌ {e.message}: {e.detail}")

        for schedule_id in [sid for sid in self._fingerprints if sid not in seen]:
            self.remove_schedule(schedule_id)
            changed += 1

        if changed:
            logger.info(f"🔄 Schedule sync: {changed} change(s), {len(seen)} active")

    # ── Fire ─────────────────────────────────────────────

    async def fire(self, schedule_id: str, generation: int) -> None:
        """Job callback. Errors stay inside this firing."""
        if self.generation(schedule_id) != generation:
            logger.debug(f"Ignoring superseded firing of {schedule_id} (generation {generation})")
            return
        try:
            await self._execute(schedule_id)
        except Exception as e:
            logger.error(f"❌ Schedule {schedule_id} failed: {e}", exc_info=True)

    async def _execute(self, schedule_id: str) -> None:
        schedule = await self.registry.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.info(f"Schedule {schedule_id} is gone or disabled, skipping")
            return

        logger.info(f"⏰ Executing schedule '{schedule.name}'")
        if schedule.check_holidays:
            holiday = await self.calendar.check(datetime.now(self.tz).date())
            if holiday:
                logger.info(f"Skipping schedule '{schedule.name}' due to holiday: {holiday}")
                return

        for ref in schedule.switches:
            try:
                await self._apply_switch(schedule, ref)
            except Exception as e:
                logger.error(
                    f"❌ Schedule '{schedule.name}' failed on {ref.device_id}/{ref.switch_id}: {e}",
                    exc_info=True,
                )

        await self.registry.update_schedule_fields(schedule.id, {"last_run": utc_now()})

        if schedule.type == ScheduleType.ONCE:
            await self.registry.update_schedule_fields(
                schedule.id, {"enabled": False, "updated_at": utc_now()}
            )
            self._unschedule(schedule.id)

    async def _motion_recent(self, device: Device) -> bool:
        sensor = device.motion_sensor
        if sensor is None or not sensor.is_active:
            return False
        since = utc_now() - timedelta(minutes=self.settings.MOTION_RECENCY_MINUTES)
        return await self.registry.has_recent_motion(device.mac_address, since)

    async def _apply_switch(self, schedule: Schedule, ref: SwitchRef) -> None:
        mac = normalize_mac(ref.device_id)
        device = await self.registry.get_device(mac)
        switch = device.find_switch(ref.switch_id) if device else None
        if switch is None:
            logger.warning(f"Schedule '{schedule.name}': switch {ref.device_id}/{ref.switch_id} not found")
            return

        turn_on = schedule.action == ScheduleAction.ON

        if (
            not turn_on
            and schedule.respect_motion
            and not switch.dont_auto_off
            and await self._motion_recent(device)
        ):
            await self.alerts.raise_alert(
                device,
                AlertType.MOTION_OVERRIDE,
                AlertSeverity.MEDIUM,
                f"Schedule tried to turn off {switch.name} but motion detected. Manual override required.",
                {
                    "switchId": switch.id,
                    "switchName": switch.name,
                    "scheduleId": schedule.id,
                    "scheduleName": schedule.name,
                },
            )
            logger.info(f"Motion detected, skipping auto-off for {switch.name}")
            return

        device = await self._write_state(mac, switch.id, turn_on, "schedule")
        if device is None:
            return
        await self.alerts.record_activity(
            device, schedule.action.value, "schedule", switch,
            {"scheduleId": schedule.id, "scheduleName": schedule.name},
        )

        if turn_on and schedule.timeout_minutes > 0:
            self._arm_auto_off(schedule, mac, switch.id)

        logger.info(f"{schedule.action.value.upper()} {switch.name} in {device.name}")

    async def _write_state(self, mac: str, switch_id: str, state: bool, source: str) -> Device | None:
        """Persist the state, publish it, then push it to the hardware if connected."""
        now = utc_now()
        gpio: list[int] = []

        def apply(d: Device) -> bool:
            gpio.clear()
            sw = d.find_switch(switch_id)
            if sw is None:
                return False
            gpio.append(sw.gpio)
            return sw.set_state(state, now)

        device = await self.registry.update_device(mac, apply)
        if device is None or not gpio:
            return None
        await self.events.state_changed(device, source)
        await self.dispatcher.push_state(mac, gpio[0], state)
        return device

    # ── Auto-off ─────────────────────────────────────────

    def _arm_auto_off(self, schedule: Schedule, mac: str, switch_id: str) -> None:
        job_id = auto_off_job_id(schedule.id, mac, switch_id)
        run_at = datetime.now(self.tz) + timedelta(minutes=schedule.timeout_minutes)
        self.scheduler.add_job(
            self.auto_off,
            trigger=DateTrigger(run_date=run_at, timezone=self.tz),
            args=[schedule.id, mac, switch_id, schedule.timeout_minutes],
            id=job_id,
            replace_existing=True,
        )
        self._auto_off_jobs.setdefault(schedule.id, set()).add(job_id)
        logger.info(f"🔔 Auto-off for {mac}/{switch_id} in {schedule.timeout_minutes} min")

    def armed_auto_offs(self, schedule_id: str) -> set[str]:
        return set(self._auto_off_jobs.get(schedule_id, set()))

    async def auto_off(self, schedule_id: str, device_id: str, switch_id: str, timeout_minutes: int) -> None:
        job_id = auto_off_job_id(schedule_id, device_id, switch_id)
        self._auto_off_jobs.get(schedule_id, set()).discard(job_id)
        try:
            device = await self.registry.get_device(device_id)
            switch = device.find_switch(switch_id) if device else None
            if switch is None or not switch.state:
                return

            if switch.dont_auto_off:
                await self.alerts.raise_alert(
                    device,
                    AlertType.TIMEOUT,
                    AlertSeverity.HIGH,
                    f"{switch.name} has been running for {timeout_minutes} minutes and needs manual attention.",
                    {"switchId": switch.id, "switchName": switch.name, "duration": timeout_minutes},
                )
                return

            device = await self._write_state(device.mac_address, switch.id, False, "timeout")
            if device is not None:
                await self.alerts.record_activity(
                    device, "off", "system", switch,
                    {"reason": "timeout", "timeoutMinutes": timeout_minutes},
                )
                logger.info(f"⏱️ Auto-off {switch.name} in {device.name} after {timeout_minutes} min")
        except Exception as e:
            logger.error(f"❌ Auto-off failed for {device_id}/{switch_id}: {e}", exc_info=True)

    # ── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        await self.load_schedules()
        self.scheduler.add_job(
            self.sync_schedules, "interval",
            minutes=self.settings.SCHEDULE_SYNC_INTERVAL_MINUTES,
            id=SYNC_JOB_ID, replace_existing=True,
        )
