"""
Schedules feature: Schedule documents.
"""

import re
import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ONCE = "once"


class ScheduleAction(str, Enum):
    ON = "on"
    OFF = "off"


class SwitchRef(BaseModel):
    device_id: str  # hardware address
    switch_id: str


class Schedule(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    type: ScheduleType = ScheduleType.DAILY
    time: str                 # "HH:MM" local time
    days: list[int] = Field(default_factory=list)  # 0=Sun ... 6=Sat
    action: ScheduleAction
    switches: list[SwitchRef] = Field(default_factory=list)
    timeout_minutes: int = 0
    check_holidays: bool = False
    respect_motion: bool = False
    enabled: bool = True
    last_run: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("time")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError(f"Invalid time '{value}', expected HH:MM")
        return value

    @field_validator("days")
    @classmethod
    def _valid_days(cls, value: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in value):
            raise ValueError("days must be within 0 (Sunday) .. 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def _weekly_needs_days(self):
        if self.type == ScheduleType.WEEKLY and not self.days:
            raise ValueError("weekly schedules need at least one day")
        if self.timeout_minutes < 0:
            raise ValueError("timeout_minutes must be >= 0")
        return self

    @property
    def hour_minute(self) -> tuple[int, int]:
        hour, minute = map(int, self.time.split(":"))
        return hour, minute

    def fingerprint(self) -> str:
        """Changes whenever a field that affects the compiled trigger changes."""
        return self.model_dump_json(exclude={"last_run", "updated_at"})
