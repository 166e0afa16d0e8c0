"""
Commands feature: Command Dispatcher.

Turns a toggle intent into either a `switch_command` on the device's live
connection or a persisted QueuedIntent when the device is offline.

Duplicate-suppression guards (in flight, cooldown) are checked and taken
synchronously before the first await, so two concurrent requests for the same
switch can't both pass them.
"""

import logging
import time
from typing import Callable

from classroom_sync.config import Settings, get_settings
from classroom_sync.core.events import DeviceEventPublisher
from classroom_sync.core.timers import TimerRegistry
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.commands.schemas import BulkOutcome, ToggleOutcome, ToggleStatus
from classroom_sync.features.devices.models import Device, Switch, normalize_mac
from classroom_sync.features.devices.registry import DeviceRegistry
from classroom_sync.features.gateway.gateway import ProtocolGateway
from classroom_sync.features.gateway.protocol import SwitchCommandMessage

logger = logging.getLogger(__name__)

SwitchFilter = Callable[[Device, Switch], bool]


class CommandDispatcher:
    def __init__(
        self,
        registry: DeviceRegistry,
        gateway: ProtocolGateway,
        events: DeviceEventPublisher,
        alerts: AlertService,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.gateway = gateway
        self.events = events
        self.alerts = alerts
        self.settings = settings or get_settings()
        self.clock = clock

        self._in_flight: set[tuple[str, str]] = set()         # (mac, switch_id)
        self._last_toggle: dict[tuple[str, str], float] = {}
        self._pin_owner: dict[tuple[str, int], str] = {}      # (mac, gpio) -> switch_id
        self._command_seq: dict[str, int] = {}
        self._timers = TimerRegistry("dispatcher")

    # ── Guards ───────────────────────────────────────────

    def _take_guard(self, key: tuple[str, str]) -> str | None:
        """Returns the reason the toggle must be ignored, or takes the guard."""
        if key in self._in_flight:
            return "in_flight"
        now = self.clock()
        last = self._last_toggle.get(key)
        if last is not None and now - last < self.settings.TOGGLE_COOLDOWN_SECONDS:
            return "cooldown"
        self._in_flight.add(key)
        self._last_toggle[key] = now
        return None

    def _release(self, key: tuple[str, str]) -> None:
        self._in_flight.discard(key)

    def is_in_flight(self, device_id: str, switch_id: str) -> bool:
        return (normalize_mac(device_id), switch_id) in self._in_flight

    def _next_seq(self, mac: str) -> int:
        seq = self._command_seq.get(mac, 0) + 1
        self._command_seq[mac] = seq
        return seq

    # ── Single switch ────────────────────────────────────

    async def request_toggle(
        self,
        device_id: str,
        switch_id: str,
        desired_state: bool | None = None,
        triggered_by: str = "user",
    ) -> ToggleOutcome:
        mac = normalize_mac(device_id)
        if self.gateway.limited_mode:
            return ToggleOutcome(status=ToggleStatus.UNAVAILABLE, device_id=mac, switch_id=switch_id)

        key = (mac, switch_id)
        blocked = self._take_guard(key)
        if blocked is not None:
            logger.debug(f"Toggle {mac}/{switch_id} ignored: {blocked}")
            return ToggleOutcome(
                status=ToggleStatus.IGNORED, device_id=mac, switch_id=switch_id, reason=blocked
            )

        try:
            device = await self.registry.get_device(mac)
            switch = device.find_switch(switch_id) if device else None
            if switch is None:
                self._release(key)
                return ToggleOutcome(status=ToggleStatus.NOT_FOUND, device_id=mac, switch_id=switch_id)

            desired = (not switch.state) if desired_state is None else desired_state

            if self.gateway.is_connected(mac):
                seq = self._next_seq(mac)
                if await self.gateway.send(mac, SwitchCommandMessage(
                    mac=mac, gpio=switch.gpio, state=desired, seq=seq,
                )):
                    self._pin_owner[(mac, switch.gpio)] = switch_id
                    self._timers.arm(
                        f"reconcile:{mac}:{switch_id}",
                        self.settings.RECONCILE_DELAY_SECONDS,
                        lambda: self._reconcile(mac, switch_id),
                    )
                    logger.info(f"➡️ {mac} gpio {switch.gpio} -> {'on' if desired else 'off'} (seq {seq})")
                    await self.alerts.record_activity(
                        device, "on" if desired else "off", triggered_by, switch, {"delivery": "sent"}
                    )
                    return ToggleOutcome(
                        status=ToggleStatus.SENT, device_id=mac, switch_id=switch_id,
                        desired_state=desired, seq=seq,
                    )
                logger.warning(f"Send to {mac} failed, queueing intent instead")

            outcome = await self._queue(device, switch, desired, triggered_by)
            self._release(key)
            return outcome
        except Exception:
            self._release(key)
            raise

    async def _queue(self, device: Device, switch: Switch, desired: bool, triggered_by: str) -> ToggleOutcome:
        gpio = switch.gpio

        def upsert(d: Device) -> None:
            d.upsert_intent(gpio, desired)

        updated = await self.registry.update_device(device.mac_address, upsert) or device
        logger.info(f"📥 {device.mac_address} offline: queued gpio {gpio} -> {'on' if desired else 'off'}")
        await self.events.state_changed(updated, "intent_queued")
        await self.alerts.record_activity(
            updated, "on" if desired else "off", triggered_by, switch, {"delivery": "queued"}
        )
        return ToggleOutcome(
            status=ToggleStatus.QUEUED, device_id=device.mac_address, switch_id=switch.id,
            desired_state=desired,
        )

    async def _reconcile(self, mac: str, switch_id: str) -> None:
        """Post-command fetch: release the guard and republish what the registry holds."""
        self._release((mac, switch_id))
        device = await self.registry.get_device(mac)
        if device is not None:
            await self.events.state_changed(device, "reconcile")

    def on_command_result(self, mac: str, gpio: int) -> None:
        """The device answered for this pin; the command is no longer in flight."""
        switch_id = self._pin_owner.pop((mac, gpio), None)
        if switch_id is not None:
            self._release((mac, switch_id))

    # ── Connection lifecycle ─────────────────────────────

    def on_device_connected(self, mac: str) -> None:
        # Device restarts its per-pin seq tracking on identify
        self._command_seq[mac] = 0
        self._timers.arm(
            f"flush:{mac}",
            self.settings.QUEUE_FLUSH_DELAY_SECONDS,
            lambda: self.flush_queued_intents(mac),
        )

    def on_device_disconnected(self, mac: str) -> None:
        self._timers.cancel(f"flush:{mac}")
        self._timers.cancel_prefix(f"reconcile:{mac}:")
        self._in_flight = {k for k in self._in_flight if k[0] != mac}
        self._pin_owner = {k: v for k, v in self._pin_owner.items() if k[0] != mac}

    async def flush_queued_intents(self, mac: str) -> int:
        """Deliver intents that still disagree with the device's reported state.

        All intents are cleared, delivered or not. Returns how many were sent.
        """
        if not self.gateway.is_connected(mac):
            logger.debug(f"Flush skipped for {mac}: not connected")
            return 0

        taken: list = []

        def take(d: Device) -> bool:
            taken[:] = list(d.queued_intents)
            if not d.queued_intents:
                return False
            d.queued_intents = []
            return True

        device = await self.registry.update_device(mac, take)
        if device is None or not taken:
            return 0

        sent = 0
        for intent in taken:
            switch = device.switch_by_gpio(intent.gpio)
            if switch is None or switch.state == intent.desired_state:
                logger.debug(f"Discarding queued intent for {mac} gpio {intent.gpio}: already satisfied")
                continue
            if await self.push_state(mac, intent.gpio, intent.desired_state):
                sent += 1

        logger.info(f"📤 Flushed {len(taken)} queued intent(s) for {mac}, {sent} sent")
        await self.events.state_changed(device, "intents_flushed")
        return sent

    async def push_state(self, mac: str, gpio: int, state: bool) -> bool:
        """Best-effort command without guards, for callers that already own the intent."""
        if not self.gateway.is_connected(mac):
            return False
        return await self.gateway.send(mac, SwitchCommandMessage(
            mac=mac, gpio=gpio, state=state, seq=self._next_seq(mac),
        ))

    # ── Bulk ─────────────────────────────────────────────

    async def _bulk(self, state: bool, matches: SwitchFilter, label: str) -> BulkOutcome:
        if self.gateway.limited_mode:
            return BulkOutcome()

        result = BulkOutcome()
        for device in await self.registry.list_devices():
            if not device.is_online or not self.gateway.is_connected(device.mac_address):
                continue
            for switch in device.switches:
                if switch.state == state or not matches(device, switch):
                    continue
                outcome = await self.request_toggle(device.mac_address, switch.id, state)
                result.outcomes.append(outcome)
                if outcome.status == ToggleStatus.SENT:
                    result.changed += 1

        logger.info(f"Bulk toggle ({label}) -> {'on' if state else 'off'}: {result.changed} switch(es)")
        return result

    async def toggle_all(self, state: bool) -> BulkOutcome:
        return await self._bulk(state, lambda d, s: True, "all")

    async def toggle_by_type(self, switch_type: str, state: bool) -> BulkOutcome:
        return await self._bulk(state, lambda d, s: s.type == switch_type, f"type={switch_type}")

    async def toggle_by_location(self, location: str, state: bool) -> BulkOutcome:
        return await self._bulk(state, lambda d, s: d.location == location, f"location={location}")

    def shutdown(self) -> None:
        self._timers.cancel_all()
