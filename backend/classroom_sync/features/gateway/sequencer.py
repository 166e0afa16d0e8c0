"""
Gateway feature: Sequencer & Reconciler.

Decides whether an inbound device report is new information and merges it
into the registry.

  - Two volatile counters per device (state reports, command results), reset
    on identification. A frame whose `seq` is not above the last accepted one
    on its channel is a duplicate or arrived out of order, and is dropped.
  - A small rate window bounds accepted state reports per device. Overflow
    collapses into one deferred slot holding the newest report, applied when
    the window reopens, so a flapping device still converges.
  - The device is the final authority on its own hardware: reported actual
    state always wins over requested / persisted state.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from classroom_sync.config import Settings, get_settings
from classroom_sync.core.events import DeviceEventPublisher
from classroom_sync.core.security import (
    canonical_result_payload,
    canonical_state_payload,
    verify_signature,
)
from classroom_sync.core.timers import TimerRegistry
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.devices.models import Device, utc_now
from classroom_sync.features.devices.registry import DeviceRegistry
from classroom_sync.features.gateway.protocol import (
    Frame,
    StateAckMessage,
    StateUpdateMessage,
    SwitchResultMessage,
)

logger = logging.getLogger(__name__)

SEQ_SENTINEL = -1

ResultListener = Callable[[str, int], None]
ReplySink = Callable[[str, Frame], Awaitable[bool]]


@dataclass
class ChannelCounters:
    state: int = SEQ_SENTINEL
    result: int = SEQ_SENTINEL


class RateWindow:
    """Sliding window: at most `limit` admissions per `window` seconds."""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._hits: deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._hits and now - self._hits[0] >= self.window:
            self._hits.popleft()

    def admit(self, now: float) -> bool:
        self._expire(now)
        if len(self._hits) >= self.limit:
            return False
        self._hits.append(now)
        return True

    def reopens_in(self, now: float) -> float:
        self._expire(now)
        if len(self._hits) < self.limit:
            return 0.0
        return max(0.0, self._hits[0] + self.window - now)


class Sequencer:
    def __init__(
        self,
        registry: DeviceRegistry,
        events: DeviceEventPublisher,
        alerts: AlertService,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.events = events
        self.alerts = alerts
        self.settings = settings or get_settings()
        self.clock = clock
        self.reply: ReplySink | None = None  # set by the gateway

        self._counters: dict[str, ChannelCounters] = {}
        self._windows: dict[str, RateWindow] = {}
        self._deferred: dict[str, StateUpdateMessage] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._timers = TimerRegistry("sequencer")
        self._result_listeners: list[ResultListener] = []

    # ── Lifecycle ────────────────────────────────────────

    def add_result_listener(self, listener: ResultListener) -> None:
        self._result_listeners.append(listener)

    def reset(self, mac: str) -> None:
        """Back to the sentinel: the device (re)identified and restarted its counters."""
        self._counters[mac] = ChannelCounters()
        self._windows.pop(mac, None)
        self._deferred.pop(mac, None)
        self._timers.cancel(f"deferred:{mac}")

    def forget(self, mac: str) -> None:
        self._counters.pop(mac, None)
        self._windows.pop(mac, None)
        self._deferred.pop(mac, None)
        self._timers.cancel(f"deferred:{mac}")

    def counters(self, mac: str) -> ChannelCounters:
        return self._counters.setdefault(mac, ChannelCounters())

    def _lock(self, mac: str) -> asyncio.Lock:
        lock = self._locks.get(mac)
        if lock is None:
            lock = self._locks[mac] = asyncio.Lock()
        return lock

    @staticmethod
    def _is_stale(last: int, seq: int | None) -> bool:
        return seq is not None and seq <= last

    def _unsequenced_refused(self, mac: str, frame_type: str, seq: int | None) -> bool:
        # Legacy firmware omits seq; only tolerated while signatures are optional
        if seq is None and self.settings.MESSAGE_AUTH_REQUIRED:
            logger.warning(f"Dropping {frame_type} from {mac}: seq is required when messages are signed")
            return True
        return False

    async def _signature_ok(self, mac: str, payload: str, sig: str | None) -> bool:
        required = self.settings.MESSAGE_AUTH_REQUIRED
        if not required and not sig:
            return True
        secret = await self.registry.get_device_secret(mac)
        if not secret:
            # Nothing to check an optional signature against
            return not required
        return verify_signature(secret, payload, sig)

    # ── state_update ─────────────────────────────────────

    async def handle_state_update(self, mac: str, msg: StateUpdateMessage) -> StateAckMessage | None:
        if self._is_stale(self.counters(mac).state, msg.seq):
            logger.debug(f"Stale state_update from {mac}: seq {msg.seq} <= {self.counters(mac).state}")
            return None
        now = self.clock()
        window = self._windows.get(mac)
        if window is None:
            window = self._windows[mac] = RateWindow(
                self.settings.STATE_RATE_LIMIT_COUNT, self.settings.STATE_RATE_WINDOW_SECONDS
            )
        if not window.admit(now):
            self._defer(mac, msg, window.reopens_in(now))
            return None
        return await self._apply_state_update(mac, msg)

    def _defer(self, mac: str, msg: StateUpdateMessage, delay: float) -> None:
        if mac in self._deferred:
            logger.debug(f"Rate window full for {mac}: replacing deferred state_update")
        self._deferred[mac] = msg
        key = f"deferred:{mac}"
        if not self._timers.is_armed(key):
            self._timers.arm(key, delay, lambda: self._drain_deferred(mac))

    async def _drain_deferred(self, mac: str) -> None:
        msg = self._deferred.pop(mac, None)
        if msg is None:
            return
        window = self._windows.get(mac)
        if window is not None:
            window.admit(self.clock())
        ack = await self._apply_state_update(mac, msg)
        if ack is not None and self.reply is not None:
            await self.reply(mac, ack)

    async def _apply_state_update(self, mac: str, msg: StateUpdateMessage) -> StateAckMessage | None:
        async with self._lock(mac):
            counters = self.counters(mac)
            if self._is_stale(counters.state, msg.seq):
                logger.debug(f"Stale state_update from {mac}: seq {msg.seq} <= {counters.state}")
                return None
            if self._unsequenced_refused(mac, "state_update", msg.seq):
                return None

            payload = canonical_state_payload(mac, msg.seq if msg.seq is not None else 0, msg.ts)
            if not await self._signature_ok(mac, payload, msg.sig):
                logger.warning(f"Dropping state_update from {mac}: signature mismatch")
                return None
            if msg.seq is not None:
                counters.state = msg.seq

            reported = {r.gpio: r.state for r in msg.switches}
            now = utc_now()
            changed: list[int] = []
            motion: list[bool] = []

            def apply(device: Device) -> None:
                changed.clear()
                motion.clear()
                for gpio, state in reported.items():
                    sw = device.switch_by_gpio(gpio)
                    if sw is not None and sw.set_state(state, now):
                        changed.append(gpio)
                sensor = device.motion_sensor
                if msg.pir and sensor is not None and sensor.is_active:
                    sensor.last_triggered = now
                    motion.append(True)
                device.last_seen = now

            device = await self.registry.update_device(mac, apply)
            if device is None:
                return None

            if motion:
                await self.alerts.record_activity(device, "motion_detected", "pir")
            await self.events.state_changed(device, "state_update")
            if changed:
                logger.info(f"🔁 {mac} reported {len(changed)} change(s): gpio {changed}")
            return StateAckMessage(ts=msg.ts, changed=len(changed))

    # ── switch_result ────────────────────────────────────

    async def handle_switch_result(self, mac: str, msg: SwitchResultMessage) -> None:
        async with self._lock(mac):
            counters = self.counters(mac)
            if self._is_stale(counters.result, msg.seq):
                logger.debug(f"Stale switch_result from {mac}: seq {msg.seq} <= {counters.result}")
                return
            if self._unsequenced_refused(mac, "switch_result", msg.seq):
                return

            payload = canonical_result_payload(
                mac, msg.seq if msg.seq is not None else 0, msg.ts,
                msg.gpio, msg.success, msg.requested_state, msg.actual_state,
            )
            if not await self._signature_ok(mac, payload, msg.sig):
                logger.warning(f"Dropping switch_result from {mac}: signature mismatch")
                return
            if msg.seq is not None:
                counters.result = msg.seq

            for listener in self._result_listeners:
                listener(mac, msg.gpio)

            result_event = {
                "deviceId": mac,
                "gpio": msg.gpio,
                "success": msg.success,
                "reason": msg.reason,
                "requestedState": msg.requested_state,
                "actualState": msg.actual_state,
                "seq": msg.seq,
                "ts": msg.ts,
            }

            if not msg.success and msg.reason == "stale_seq":
                # Device already applied a newer command for this pin
                logger.debug(f"{mac} gpio {msg.gpio}: command superseded (stale_seq)")
                await self.events.publish("switch_result", result_event)
                return

            device = await self._reconcile(mac, msg.gpio, msg.actual_state)

            if not msg.success:
                switch = device.switch_by_gpio(msg.gpio) if device else None
                logger.info(f"⛔ {mac} gpio {msg.gpio} blocked: {msg.reason}")
                await self.events.publish("device_toggle_blocked", {
                    "deviceId": mac,
                    "switchId": switch.id if switch else None,
                    "reason": msg.reason or "unknown",
                    "requestedState": msg.requested_state,
                    "actualState": msg.actual_state,
                    "timestamp": int(time.time() * 1000),
                })
            await self.events.publish("switch_result", result_event)

    async def _reconcile(self, mac: str, gpio: int, actual_state: bool | None) -> Device | None:
        """Bring the stored state in line with the device's reported actual state."""
        if actual_state is None:
            return await self.registry.get_device(mac)

        now = utc_now()
        changed: list[bool] = []

        def apply(device: Device) -> bool:
            changed.clear()
            sw = device.switch_by_gpio(gpio)
            if sw is None or not sw.set_state(actual_state, now):
                return False
            changed.append(True)
            return True

        device = await self.registry.update_device(mac, apply)
        if device is not None and changed:
            await self.events.state_changed(device, "switch_result")
        return device
