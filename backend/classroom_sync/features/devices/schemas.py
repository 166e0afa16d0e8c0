"""
Devices feature: request / response schemas for provisioning.
"""

from pydantic import BaseModel, Field

from classroom_sync.features.devices.models import Device, ManualMode, MotionSensor


class SwitchCreate(BaseModel):
    name: str
    gpio: int
    type: str = "light"
    dont_auto_off: bool = False
    manual_switch_enabled: bool = False
    manual_switch_gpio: int | None = None
    manual_mode: ManualMode = ManualMode.MAINTAINED
    manual_active_low: bool = True


class DeviceCreate(BaseModel):
    mac_address: str
    name: str
    ip_address: str | None = None
    location: str = ""
    classroom: str = ""
    switches: list[SwitchCreate] = Field(default_factory=list)
    motion_sensor: MotionSensor | None = None


class SwitchesUpdate(BaseModel):
    switches: list[SwitchCreate]


class ProvisionedDevice(BaseModel):
    device: Device
    secret: str  # returned once, never readable again
