"""Unit tests for the device firmware model: config, debounce, commands, timed tasks."""
import json

import pytest

from classroom_sync.core.security import canonical_state_payload, sign_payload
from classroom_sync.features.firmware.board import SimulatedBoard
from classroom_sync.features.firmware.state_machine import FirmwareSettings, FirmwareStateMachine
from classroom_sync.features.firmware.tasks import TaskScheduler

MAC = "AA:BB:CC:DD:EE:01"

SWITCHES = [
    {"gpio": 26, "name": "Light", "state": False,
     "manual": {"enabled": True, "gpio": 32, "mode": "maintained", "activeLow": True}},
    {"gpio": 27, "name": "Fan", "state": True,
     "manual": {"enabled": True, "gpio": 33, "mode": "momentary", "activeLow": True}},
]


class Device:
    def __init__(self, secret=None):
        self.board = SimulatedBoard()
        self.outbox: list[dict] = []
        self.fw = FirmwareStateMachine(
            MAC, self.board, lambda text: self.outbox.append(json.loads(text)),
            secret=secret, settings=FirmwareSettings(_env_file=None),
        )

    def receive(self, frame: dict) -> None:
        self.fw.handle_message(json.dumps(frame))

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.outbox if f["type"] == frame_type]

    def identify(self, switches=SWITCHES) -> None:
        self.fw.on_connected(0)
        self.receive({"type": "identified", "mac": MAC, "mode": "secure", "switches": switches})

    def press(self, pin: int, at_ms: int, hold_ms: int = 100) -> None:
        # active-low: pressed = low
        self.board.set_input(pin, False)
        self.fw.tick(at_ms)
        self.fw.tick(at_ms + hold_ms)
        self.board.set_input(pin, True)
        self.fw.tick(at_ms + 2 * hold_ms)
        self.fw.tick(at_ms + 3 * hold_ms)


@pytest.fixture
def device():
    return Device()


class TestTaskScheduler:
    def test_runs_when_due_and_isolates_failures(self):
        calls = []
        tasks = TaskScheduler()
        tasks.add("boom", 100, lambda now: 1 / 0)
        tasks.add("count", 100, calls.append)

        assert tasks.run_due(0) == ["boom", "count"]
        assert tasks.run_due(50) == []
        assert tasks.run_due(100) == ["boom", "count"]
        assert calls == [0, 100]

    def test_one_shot_runs_once(self):
        calls = []
        tasks = TaskScheduler()
        tasks.add("once", 10, calls.append, start_ms=20, one_shot=True)
        tasks.run_due(10)
        tasks.run_due(20)
        tasks.run_due(40)
        assert calls == [20]
        assert not tasks.has("once")


class TestIdentify:
    def test_sends_identify_and_retries_until_identified(self):
        dev = Device(secret="abc")
        dev.fw.on_connected(0)
        assert dev.of_type("identify") == [{"type": "identify", "mac": MAC, "secret": "abc"}]

        dev.fw.tick(dev.fw.settings.IDENTIFY_RETRY_MS)
        assert len(dev.of_type("identify")) == 2

        dev.receive({"type": "identified", "mac": MAC, "mode": "secure", "switches": SWITCHES})
        dev.fw.tick(3 * dev.fw.settings.IDENTIFY_RETRY_MS)
        assert len(dev.of_type("identify")) == 2

    def test_error_keeps_device_unidentified(self, device):
        device.fw.on_connected(0)
        device.receive({"type": "error", "reason": "invalid_or_missing_secret"})
        assert device.fw.identified is False
        device.fw.tick(device.fw.settings.IDENTIFY_RETRY_MS)
        assert len(device.of_type("identify")) == 2

    def test_heartbeat_after_identify(self, device):
        device.identify()
        device.fw.tick(device.fw.settings.HEARTBEAT_INTERVAL_MS)
        assert device.of_type("heartbeat") == [{"type": "heartbeat", "mac": MAC}]

    def test_ping_is_answered(self, device):
        device.identify()
        device.receive({"type": "ping", "ts": 5})
        assert device.of_type("pong") == [{"type": "pong"}]


class TestConfiguration:
    def test_new_pins_are_written_staggered(self, device):
        device.identify()
        assert device.fw.pending_writes() == 2
        for t in range(0, 400, 10):
            device.fw.tick(t)

        stagger = device.fw.settings.STAGGER_MS
        assert device.board.writes == [(0, 26, False), (stagger, 27, True)]
        assert device.fw.relay_state(27) is True

    def test_known_pins_keep_their_level_on_reconfigure(self, device):
        device.identify()
        for t in range(0, 400, 10):
            device.fw.tick(t)
        writes_before = len(device.board.writes)

        # Server's view says the fan is off; hardware keeps its level
        device.receive({"type": "config_update", "switches": [
            {"gpio": 26, "name": "Light", "state": True},
            {"gpio": 27, "name": "Fan", "state": False},
            {"gpio": 25, "name": "Projector", "state": True},
        ]})
        for t in range(400, 800, 10):
            device.fw.tick(t)

        assert device.fw.relay_state(26) is False
        assert device.fw.relay_state(27) is True
        assert device.board.writes[writes_before:] == [(400, 25, True)]

    def test_flat_config_update_shape(self, device):
        device.identify()
        device.receive({"type": "config_update", "switches": [
            {"relay": 4, "manual": 25, "name": "Fan1", "manualActiveLow": False},
        ]})
        channel = device.fw.channels[4]
        assert channel.manual_gpio == 25
        assert channel.manual_active_low is False

    def test_identify_reports_full_state(self, device):
        device.identify()
        report = device.of_type("state_update")[-1]
        assert report["seq"] == 1
        assert report["switches"] == [{"gpio": 26, "state": False}, {"gpio": 27, "state": True}]


class TestManualInputs:
    def test_maintained_switch_is_debounced(self, device):
        device.identify()
        debounce = device.fw.settings.DEBOUNCE_MS

        # Glitch shorter than the debounce window
        device.board.set_input(32, False)
        device.fw.tick(1000)
        device.board.set_input(32, True)
        device.fw.tick(1000 + debounce // 2)
        device.fw.tick(1000 + 2 * debounce)
        assert device.fw.relay_state(26) is False

        # Real flip: level follows the switch
        device.board.set_input(32, False)
        device.fw.tick(2000)
        device.fw.tick(2000 + debounce)
        assert device.fw.relay_state(26) is True
        assert device.of_type("state_update")[-1]["switches"][0] == {"gpio": 26, "state": True}

        device.board.set_input(32, True)
        device.fw.tick(3000)
        device.fw.tick(3000 + debounce)
        assert device.fw.relay_state(26) is False

    def test_momentary_button_toggles_on_press_only(self, device):
        device.identify()
        assert device.fw.relay_state(27) is True
        device.press(33, at_ms=1000)
        assert device.fw.relay_state(27) is False
        device.press(33, at_ms=2000)
        assert device.fw.relay_state(27) is True


class TestCommands:
    def test_command_applies_and_reports(self, device):
        device.identify()
        device.receive({"type": "switch_command", "mac": MAC, "gpio": 26, "state": True, "seq": 5})

        result = device.of_type("switch_result")[-1]
        assert result["success"] is True
        assert result["seq"] == 5
        assert result["requestedState"] is True
        assert result["actualState"] is True
        assert device.board.read_output(26) is True
        assert device.of_type("state_update")[-1]["switches"][0]["state"] is True

    def test_older_command_is_rejected_before_any_write(self, device):
        device.identify()
        device.receive({"type": "switch_command", "mac": MAC, "gpio": 26, "state": True, "seq": 5})
        writes = len(device.board.writes)

        device.receive({"type": "switch_command", "mac": MAC, "gpio": 26, "state": False, "seq": 3})
        result = device.of_type("switch_result")[-1]
        assert result["success"] is False
        assert result["reason"] == "stale_seq"
        assert result["actualState"] is True
        assert len(device.board.writes) == writes
        assert device.fw.relay_state(26) is True

    def test_unknown_pin(self, device):
        device.identify()
        device.receive({"type": "switch_command", "mac": MAC, "gpio": 4, "state": True, "seq": 1})
        result = device.of_type("switch_result")[-1]
        assert result["success"] is False
        assert result["reason"] == "unknown_gpio"

    def test_reports_are_signed_with_secret(self):
        dev = Device(secret="k3y")
        dev.identify()
        report = dev.of_type("state_update")[-1]
        assert report["sig"] == sign_payload("k3y", canonical_state_payload(MAC, report["seq"], report["ts"]))
