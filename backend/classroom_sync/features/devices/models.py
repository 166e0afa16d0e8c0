"""
Devices feature: document shapes kept in the device registry.

A Device is identified by its hardware (MAC) address. The shared secret is
deliberately not part of these models: it is stored beside the document and
only handed out once, at provisioning time.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

MAC_PATTERN = re.compile(r"^([0-9A-F]{2}:){5}[0-9A-F]{2}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_mac(value: str) -> str:
    """Upper-case, colon-separated hardware address."""
    return (value or "").strip().upper().replace("-", ":")


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ManualMode(str, Enum):
    MAINTAINED = "maintained"  # switch position is the relay state
    MOMENTARY = "momentary"    # each press toggles


class Switch(BaseModel):
    """One relay channel on a device."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    type: str = "light"  # light | fan | ac | projector | other ...
    gpio: int
    state: bool = False
    last_state_change: datetime | None = None
    dont_auto_off: bool = False
    manual_switch_enabled: bool = False
    manual_switch_gpio: int | None = None
    manual_mode: ManualMode = ManualMode.MAINTAINED
    manual_active_low: bool = True

    def set_state(self, state: bool, at: datetime | None = None) -> bool:
        """Returns True when the stored state actually changed."""
        if self.state == state:
            return False
        self.state = state
        self.last_state_change = at or utc_now()
        return True

    def firmware_config(self) -> dict:
        return {
            "gpio": self.gpio,
            "name": self.name,
            "manual": {
                "enabled": self.manual_switch_enabled,
                "gpio": self.manual_switch_gpio,
                "mode": self.manual_mode.value,
                "activeLow": self.manual_active_low,
            },
            "state": self.state,
        }


class MotionSensor(BaseModel):
    gpio: int | None = None
    is_active: bool = True
    auto_off_delay: int = 300  # seconds
    last_triggered: datetime | None = None


class QueuedIntent(BaseModel):
    """Undelivered toggle intent, one per pin (latest wins)."""
    gpio: int
    desired_state: bool
    timestamp: datetime = Field(default_factory=utc_now)


class Device(BaseModel):
    mac_address: str
    name: str
    ip_address: str | None = None
    location: str = ""
    classroom: str = ""
    status: DeviceStatus = DeviceStatus.OFFLINE
    last_seen: datetime | None = None
    switches: list[Switch] = Field(default_factory=list)
    motion_sensor: MotionSensor | None = None
    queued_intents: list[QueuedIntent] = Field(default_factory=list)
    version: int = 0  # optimistic concurrency token

    @field_validator("mac_address")
    @classmethod
    def _normalize_mac(cls, value: str) -> str:
        mac = normalize_mac(value)
        if not MAC_PATTERN.match(mac):
            raise ValueError(f"Invalid MAC address format: {value!r}")
        return mac

    @model_validator(mode="after")
    def _unique_gpios(self):
        pins = [sw.gpio for sw in self.switches]
        pins += [
            sw.manual_switch_gpio for sw in self.switches
            if sw.manual_switch_enabled and sw.manual_switch_gpio is not None
        ]
        if self.motion_sensor and self.motion_sensor.gpio is not None:
            pins.append(self.motion_sensor.gpio)
        if len(set(pins)) != len(pins):
            raise ValueError("Duplicate GPIO pin detected across switches or manual switches")
        return self

    @property
    def is_online(self) -> bool:
        return self.status == DeviceStatus.ONLINE

    def find_switch(self, switch_id: str) -> Switch | None:
        return next((sw for sw in self.switches if sw.id == switch_id), None)

    def switch_by_gpio(self, gpio: int) -> Switch | None:
        return next((sw for sw in self.switches if sw.gpio == gpio), None)

    def upsert_intent(self, gpio: int, desired_state: bool) -> QueuedIntent:
        intent = QueuedIntent(gpio=gpio, desired_state=desired_state)
        self.queued_intents = [i for i in self.queued_intents if i.gpio != gpio] + [intent]
        return intent

    def public_dict(self) -> dict:
        """Shape pushed to observers."""
        return self.model_dump(mode="json")


class ActivityEntry(BaseModel):
    """Append-only activity log record."""
    device_id: str
    device_name: str = ""
    switch_id: str | None = None
    switch_name: str | None = None
    action: str
    triggered_by: str  # user | schedule | system | pir | device
    classroom: str = ""
    location: str = ""
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
