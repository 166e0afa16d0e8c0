"""
Devices feature: Service layer for provisioning and switch configuration.
"""

import logging

from pydantic import ValidationError

from classroom_sync.core.events import DeviceEventPublisher
from classroom_sync.core.exceptions import ProvisioningError
from classroom_sync.core.security import generate_device_secret
from classroom_sync.features.devices.models import Device, Switch, normalize_mac
from classroom_sync.features.devices.registry import DeviceRegistry
from classroom_sync.features.devices.schemas import DeviceCreate, SwitchCreate
from classroom_sync.features.gateway.gateway import ProtocolGateway
from classroom_sync.features.gateway.protocol import ConfigUpdateMessage

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(err["msg"] for err in error.errors())


class DeviceService:
    def __init__(self, registry: DeviceRegistry, gateway: ProtocolGateway, events: DeviceEventPublisher):
        self.registry = registry
        self.gateway = gateway
        self.events = events

    async def provision(self, data: DeviceCreate) -> tuple[Device, str]:
        """Register a new device. The generated secret is returned here and only here."""
        try:
            device = Device(
                mac_address=data.mac_address,
                name=data.name,
                ip_address=data.ip_address,
                location=data.location,
                classroom=data.classroom,
                switches=[Switch(**sw.model_dump()) for sw in data.switches],
                motion_sensor=data.motion_sensor,
            )
        except ValidationError as e:
            raise ProvisioningError(_validation_message(e))

        if await self.registry.get_device(device.mac_address) is not None:
            raise ProvisioningError(f"Device {device.mac_address} is already registered")

        secret = generate_device_secret()
        await self.registry.insert_device(device, secret)
        logger.info(f"✅ Provisioned {device.mac_address} ({device.name}) with {len(device.switches)} switch(es)")
        return device, secret

    async def update_switches(self, mac: str, switches: list[SwitchCreate]) -> Device | None:
        """Replace the switch layout, keeping ids and states of pins that stay.

        A connected device gets the new layout as `config_update`.
        """
        mac = normalize_mac(mac)
        errors: list[str] = []

        def relayout(d: Device) -> bool:
            errors.clear()
            existing = {sw.gpio: sw for sw in d.switches}
            new_switches = []
            for entry in switches:
                values = entry.model_dump()
                old = existing.get(entry.gpio)
                if old is not None:
                    values.update(id=old.id, state=old.state, last_state_change=old.last_state_change)
                new_switches.append(Switch(**values))
            try:
                Device.model_validate({**d.model_dump(), "switches": [s.model_dump() for s in new_switches]})
            except ValidationError as e:
                errors.append(_validation_message(e))
                return False
            d.switches = new_switches
            d.queued_intents = [i for i in d.queued_intents if i.gpio in {s.gpio for s in new_switches}]
            return True

        device = await self.registry.update_device(mac, relayout)
        if errors:
            raise ProvisioningError(errors[0])
        if device is None:
            return None

        await self.events.state_changed(device, "config")
        if await self.gateway.send(mac, ConfigUpdateMessage(
            switches=[sw.firmware_config() for sw in device.switches],
        )):
            logger.info(f"📤 Pushed config_update to {mac}")
        return device
