"""
Firmware feature: device-side state machine.

A logical model of the relay controller on the other end of `/esp32-ws`,
used by the simulator and the tests. Per switch:

    Unconfigured -> Configured(off | on)

Inputs are configuration frames (`identified`, `config_update`), remote
`switch_command`s and the local manual input. Every state change is reported
with a `state_update`; commands are also answered with a `switch_result`
carrying the command's own `seq`.

Time is passed in explicitly (`now_ms`); the device's main loop is `tick()`.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable

from pydantic_settings import BaseSettings

from classroom_sync.core.exceptions import ProtocolError
from classroom_sync.core.security import (
    canonical_result_payload,
    canonical_state_payload,
    sign_payload,
)
from classroom_sync.features.devices.models import ManualMode, normalize_mac
from classroom_sync.features.firmware.board import SimulatedBoard
from classroom_sync.features.firmware.tasks import TaskScheduler
from classroom_sync.features.gateway.protocol import (
    ConfigUpdateMessage,
    ErrorMessage,
    Frame,
    HeartbeatMessage,
    IdentifiedMessage,
    IdentifyMessage,
    PingMessage,
    PongMessage,
    StateUpdateMessage,
    SwitchCommandMessage,
    SwitchResultMessage,
    SwitchStateReport,
    parse_server_message,
)

logger = logging.getLogger(__name__)


class FirmwareSettings(BaseSettings):
    """Timing constants baked into the firmware build."""

    DEBOUNCE_MS: int = 50
    STAGGER_MS: int = 80
    HEARTBEAT_INTERVAL_MS: int = 30000
    IDENTIFY_RETRY_MS: int = 5000
    SAMPLE_INTERVAL_MS: int = 10

    model_config = {
        "env_prefix": "FIRMWARE_",
        "case_sensitive": True,
        "extra": "ignore",
    }


@dataclass
class SwitchChannel:
    gpio: int
    name: str = ""
    manual_enabled: bool = False
    manual_gpio: int | None = None
    manual_mode: ManualMode = ManualMode.MAINTAINED
    manual_active_low: bool = True
    state: bool = False
    last_seq: int = -1          # last applied command seq
    raw_level: bool = False     # last sampled logical level
    stable_level: bool = False  # last debounced logical level
    raw_changed_ms: int = 0

    @property
    def has_manual(self) -> bool:
        return self.manual_enabled and self.manual_gpio is not None


def _channel_from_entry(entry: dict) -> SwitchChannel:
    """Accepts the `identified` shape ({gpio, name, manual:{..}, state}) and the
    flat `config_update` shape ({relay, manual, name, manualActiveLow})."""
    gpio = entry.get("gpio", entry.get("relay"))
    if gpio is None:
        raise ValueError("switch entry has no gpio")
    manual = entry.get("manual")
    channel = SwitchChannel(gpio=int(gpio), name=entry.get("name", ""))
    if isinstance(manual, dict):
        channel.manual_enabled = bool(manual.get("enabled")) and manual.get("gpio") is not None
        channel.manual_gpio = manual.get("gpio")
        channel.manual_mode = ManualMode(manual.get("mode", ManualMode.MAINTAINED.value))
        channel.manual_active_low = bool(manual.get("activeLow", True))
    elif manual is not None:
        channel.manual_enabled = True
        channel.manual_gpio = int(manual)
        channel.manual_active_low = bool(entry.get("manualActiveLow", True))
    return channel


class FirmwareStateMachine:
    def __init__(
        self,
        mac: str,
        board: SimulatedBoard,
        send: Callable[[str], None],
        secret: str | None = None,
        settings: FirmwareSettings | None = None,
    ):
        self.mac = normalize_mac(mac)
        self.board = board
        self._send = send
        self.secret = secret
        self.settings = settings or FirmwareSettings()

        self.channels: dict[int, SwitchChannel] = {}
        self.identified = False
        self.tasks = TaskScheduler()
        self._state_seq = 0
        self._stagger: deque[tuple[int, bool]] = deque()
        self._now_ms = 0

        self.tasks.add("sample", self.settings.SAMPLE_INTERVAL_MS, self.poll_manual_inputs)

    # ── Outbound ─────────────────────────────────────────

    def _emit(self, frame: Frame) -> None:
        self._send(frame.encode())

    def _sign(self, payload: str) -> str | None:
        return sign_payload(self.secret, payload) if self.secret else None

    def send_state_update(self) -> None:
        if not self.identified:
            return
        self._state_seq += 1
        ts = self._now_ms
        self._emit(StateUpdateMessage(
            seq=self._state_seq,
            ts=ts,
            switches=[SwitchStateReport(gpio=ch.gpio, state=ch.state) for ch in self.channels.values()],
            sig=self._sign(canonical_state_payload(self.mac, self._state_seq, ts)),
        ))

    def _send_result(self, cmd: SwitchCommandMessage, success: bool, actual: bool | None, reason: str | None = None) -> None:
        ts = self._now_ms
        self._emit(SwitchResultMessage(
            gpio=cmd.gpio,
            requested_state=cmd.state,
            actual_state=actual,
            success=success,
            reason=reason,
            seq=cmd.seq,
            ts=ts,
            sig=self._sign(canonical_result_payload(
                self.mac, cmd.seq, ts, cmd.gpio, success, cmd.state, actual,
            )),
        ))

    # ── Connection lifecycle ─────────────────────────────

    def on_connected(self, now_ms: int | None = None) -> None:
        if now_ms is not None:
            self._now_ms = now_ms
        self.identified = False
        self._state_seq = 0
        self._send_identify(self._now_ms)
        self.tasks.add(
            "identify_retry", self.settings.IDENTIFY_RETRY_MS, self._send_identify,
            start_ms=self._now_ms + self.settings.IDENTIFY_RETRY_MS,
        )

    def on_disconnected(self) -> None:
        self.identified = False
        self.tasks.remove("identify_retry")
        self.tasks.remove("heartbeat")

    def _send_identify(self, now_ms: int) -> None:
        if self.identified:
            self.tasks.remove("identify_retry")
            return
        self._emit(IdentifyMessage(mac=self.mac, secret=self.secret))

    def _send_heartbeat(self, now_ms: int) -> None:
        if self.identified:
            self._emit(HeartbeatMessage(mac=self.mac))

    # ── Inbound ──────────────────────────────────────────

    def handle_message(self, raw: str) -> None:
        try:
            message = parse_server_message(raw)
        except ProtocolError as e:
            logger.warning(f"[{self.mac}] ignoring frame: {e.reason}")
            return

        if isinstance(message, IdentifiedMessage):
            self.identified = True
            self.tasks.remove("identify_retry")
            self.tasks.add(
                "heartbeat", self.settings.HEARTBEAT_INTERVAL_MS, self._send_heartbeat,
                start_ms=self._now_ms + self.settings.HEARTBEAT_INTERVAL_MS,
            )
            for channel in self.channels.values():
                channel.last_seq = -1  # server restarted its command seq
            self.apply_configuration(message.switches)
        elif isinstance(message, ConfigUpdateMessage):
            self.apply_configuration(message.switches)
        elif isinstance(message, SwitchCommandMessage):
            self.handle_command(message)
        elif isinstance(message, PingMessage):
            self._emit(PongMessage())
        elif isinstance(message, ErrorMessage):
            logger.warning(f"[{self.mac}] server error: {message.reason}")
            self.identified = False

    # ── Configuration ────────────────────────────────────

    def apply_configuration(self, entries: list[dict]) -> None:
        """Install a pin map. Pins already known keep their current level;
        new pins get their configured state through the stagger queue."""
        previous = self.channels
        channels: dict[int, SwitchChannel] = {}
        for entry in entries:
            try:
                channel = _channel_from_entry(entry)
            except (ValueError, TypeError) as e:
                logger.warning(f"[{self.mac}] skipping switch entry {entry!r}: {e}")
                continue

            old = previous.get(channel.gpio)
            if old is not None:
                channel.state = old.state
                channel.last_seq = old.last_seq
            else:
                channel.state = bool(entry.get("state", False))
                self._queue_write(channel.gpio, channel.state)

            if channel.has_manual:
                level = self._logical_input(channel)
                if old is not None and old.manual_gpio == channel.manual_gpio:
                    channel.raw_level = old.raw_level
                    channel.stable_level = old.stable_level
                    channel.raw_changed_ms = old.raw_changed_ms
                else:
                    channel.raw_level = channel.stable_level = level
                    channel.raw_changed_ms = self._now_ms
            channels[channel.gpio] = channel

        for gpio in previous:
            if gpio not in channels:
                self._queue_write(gpio, False)

        self.channels = channels
        logger.info(f"[{self.mac}] configured {len(channels)} switch(es)")
        self.send_state_update()

    def _queue_write(self, gpio: int, level: bool) -> None:
        self._stagger.append((gpio, level))
        if not self.tasks.has("stagger"):
            self.tasks.add("stagger", self.settings.STAGGER_MS, self._drain_stagger, start_ms=self._now_ms)

    def _drain_stagger(self, now_ms: int) -> None:
        if self._stagger:
            gpio, level = self._stagger.popleft()
            self.board.write(gpio, level)
        if not self._stagger:
            self.tasks.remove("stagger")

    def pending_writes(self) -> int:
        return len(self._stagger)

    # ── Relay control ────────────────────────────────────

    def _set_relay(self, channel: SwitchChannel, on: bool) -> bool:
        # A direct write supersedes any staggered one still queued for this pin
        self._stagger = deque((g, lv) for g, lv in self._stagger if g != channel.gpio)
        changed = channel.state != on
        channel.state = on
        self.board.write(channel.gpio, on)
        return changed

    def handle_command(self, cmd: SwitchCommandMessage) -> None:
        channel = self.channels.get(cmd.gpio)
        if channel is None:
            self._send_result(cmd, success=False, actual=None, reason="unknown_gpio")
            return
        if cmd.seq < channel.last_seq:
            logger.debug(f"[{self.mac}] gpio {cmd.gpio}: stale command seq {cmd.seq} < {channel.last_seq}")
            self._send_result(cmd, success=False, actual=channel.state, reason="stale_seq")
            return

        channel.last_seq = cmd.seq
        changed = self._set_relay(channel, cmd.state)
        self._send_result(cmd, success=True, actual=channel.state)
        if changed:
            self.send_state_update()

    # ── Manual inputs ────────────────────────────────────

    def _logical_input(self, channel: SwitchChannel) -> bool:
        level = self.board.read_input(channel.manual_gpio)
        return (not level) if channel.manual_active_low else level

    def poll_manual_inputs(self, now_ms: int) -> bool:
        """Sample and debounce every manual input. Returns True if a relay changed."""
        changed = False
        for channel in self.channels.values():
            if not channel.has_manual:
                continue
            level = self._logical_input(channel)
            if level != channel.raw_level:
                channel.raw_level = level
                channel.raw_changed_ms = now_ms
            if level == channel.stable_level or now_ms - channel.raw_changed_ms < self.settings.DEBOUNCE_MS:
                continue

            channel.stable_level = level
            if channel.manual_mode == ManualMode.MAINTAINED:
                # Level follows switch position
                changed |= self._set_relay(channel, level)
            elif level:
                # Momentary: rising edge into the active level toggles
                changed |= self._set_relay(channel, not channel.state)

        if changed:
            self.send_state_update()
        return changed

    # ── Main loop ────────────────────────────────────────

    def tick(self, now_ms: int) -> list[str]:
        self._now_ms = now_ms
        self.board.now_ms = now_ms
        return self.tasks.run_due(now_ms)

    def relay_state(self, gpio: int) -> bool | None:
        channel = self.channels.get(gpio)
        return channel.state if channel else None
