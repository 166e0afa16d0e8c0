"""Unit tests for device provisioning and switch relayout."""
import pytest

from classroom_sync.core.exceptions import ProvisioningError
from classroom_sync.features.devices.models import QueuedIntent
from classroom_sync.features.devices.schemas import SwitchCreate
from classroom_sync.features.devices.service import DeviceService

from conftest import MAC, run


@pytest.fixture
def service(harness):
    return DeviceService(harness.registry, harness.gateway, harness.events)


def test_relayout_keeps_surviving_pins_and_pushes_config(harness, service):
    async def scenario():
        await harness.seed()
        _, channel = await harness.connect()

        def prepare(d):
            d.find_switch("sw-light").state = True
            d.queued_intents = [
                QueuedIntent(gpio=26, desired_state=False),
                QueuedIntent(gpio=27, desired_state=True),
            ]

        await harness.registry.update_device(MAC, prepare)

        device = await service.update_switches(MAC, [
            SwitchCreate(name="Main light", gpio=26, type="light"),
            SwitchCreate(name="Projector", gpio=25, type="projector"),
        ])

        light, projector = device.switches
        assert (light.id, light.name, light.state) == ("sw-light", "Main light", True)
        assert projector.gpio == 25
        assert projector.id not in ("sw-light", "sw-fan")
        assert projector.state is False
        assert device.find_switch("sw-fan") is None
        assert [i.gpio for i in device.queued_intents] == [26]

        config = channel.of_type("config_update")[-1]
        assert [(s["gpio"], s["name"], s["state"]) for s in config["switches"]] == [
            (26, "Main light", True),
            (25, "Projector", False),
        ]
        assert harness.bus.named("device_state_changed")[-1]["source"] == "config"

    run(scenario())


def test_invalid_relayout_is_rejected_without_writing(harness, service):
    async def scenario():
        await harness.seed()
        before = await harness.registry.get_device(MAC)

        with pytest.raises(ProvisioningError):
            await service.update_switches(MAC, [
                SwitchCreate(name="A", gpio=26),
                SwitchCreate(name="B", gpio=26),
            ])

        after = await harness.registry.get_device(MAC)
        assert after.version == before.version
        assert [sw.id for sw in after.switches] == ["sw-light", "sw-fan"]

    run(scenario())


def test_relayout_of_offline_or_unknown_device(harness, service):
    async def scenario():
        await harness.seed()
        device = await service.update_switches(MAC, [SwitchCreate(name="Fan", gpio=27, type="fan")])
        assert [sw.id for sw in device.switches] == ["sw-fan"]

        assert await service.update_switches("AA:BB:CC:DD:EE:99", []) is None

    run(scenario())
