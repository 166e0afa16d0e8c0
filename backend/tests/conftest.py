"""Shared fixtures: in-memory registry, recording bus, fake device channel."""
import asyncio
import json

import pytest

from classroom_sync.config import Settings
from classroom_sync.core.events import DeviceEventPublisher, EventBus
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.commands.dispatcher import CommandDispatcher
from classroom_sync.features.devices.models import Device, MotionSensor, Switch
from classroom_sync.features.devices.registry import InMemoryRegistry
from classroom_sync.features.gateway.gateway import Channel, ProtocolGateway
from classroom_sync.features.gateway.sequencer import Sequencer

MAC = "AA:BB:CC:DD:EE:01"
SECRET = "s3cret-s3cret-s3cret"


class RecordingBus(EventBus):
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def named(self, event: str) -> list[dict]:
        return [data for name, data in self.events if name == event]


class FakeChannel(Channel):
    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self.close_code = None

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("channel closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == frame_type]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_device(mac: str = MAC, **overrides) -> Device:
    fields = dict(
        mac_address=mac,
        name="Room 101 Controller",
        location="Block A",
        classroom="101",
        switches=[
            Switch(id="sw-light", name="Light", type="light", gpio=26),
            Switch(id="sw-fan", name="Fan", type="fan", gpio=27),
        ],
        motion_sensor=MotionSensor(gpio=34, is_active=True),
    )
    fields.update(overrides)
    return Device(**fields)


def run(coro):
    return asyncio.run(coro)


class Harness:
    """Wires the sync core the way the lifespan does, on in-memory parts."""

    def __init__(
        self,
        settings: Settings | None = None,
        secret: str | None = SECRET,
        registry: InMemoryRegistry | None = None,
    ):
        self.settings = settings or Settings(_env_file=None)
        self.registry = registry or InMemoryRegistry()
        self.bus = RecordingBus()
        self.events = DeviceEventPublisher(self.bus)
        self.alerts_sent = []
        self.alerts = AlertService(self.registry, self.bus, notifier=self._notify)
        self.clock = FakeClock()
        self.sequencer = Sequencer(self.registry, self.events, self.alerts, self.settings, clock=self.clock)
        self.gateway = ProtocolGateway(self.registry, self.sequencer, self.events, self.alerts, self.settings)
        self.dispatcher = CommandDispatcher(
            self.registry, self.gateway, self.events, self.alerts, self.settings, clock=self.clock
        )
        self.sequencer.add_result_listener(self.dispatcher.on_command_result)
        self.gateway.add_connect_listener(self.dispatcher.on_device_connected)
        self.gateway.add_disconnect_listener(self.dispatcher.on_device_disconnected)
        self.secret = secret

    async def _notify(self, alert) -> bool:
        self.alerts_sent.append(alert)
        return True

    async def seed(self, device: Device | None = None) -> Device:
        device = device or make_device()
        await self.registry.insert_device(device, self.secret)
        return device

    async def connect(self, mac: str = MAC, secret: str | None = SECRET):
        channel = FakeChannel()
        conn = self.gateway.open(channel, remote_ip="10.0.0.5")
        frame = {"type": "identify", "mac": mac}
        if secret is not None:
            frame["secret"] = secret
        await self.gateway.handle_message(conn, json.dumps(frame))
        return conn, channel

    async def send(self, conn, frame: dict) -> None:
        await self.gateway.handle_message(conn, json.dumps(frame))


@pytest.fixture
def harness() -> Harness:
    return Harness()
