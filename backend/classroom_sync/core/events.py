"""
Observer-facing event bus.

The sync core only produces events; dashboards consume them over
`/ws/events`. Components receive an `EventBus` instance instead of reaching
for a process-wide emitter, so tests can pass a recording bus.
"""

import asyncio
import logging
import time

from classroom_sync.features.devices.models import Device

logger = logging.getLogger(__name__)


class EventBus:
    """Publishing interface. Subclasses decide where events go."""

    async def publish(self, event: str, data: dict) -> None:
        raise NotImplementedError


class ObserverHub(EventBus):
    """In-process fan-out to connected observers (one queue per observer)."""

    def __init__(self, max_queue: int = 256):
        self._observers: set[asyncio.Queue] = set()
        self._max_queue = max_queue

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._observers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._observers.discard(queue)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def publish(self, event: str, data: dict) -> None:
        frame = {"event": event, "data": data}
        for queue in list(self._observers):
            try:
                queue.put_nowait(frame)
            except asyncio.QueueFull:
                # Slow dashboard: drop its oldest frame, it will resync on seq gap
                queue.get_nowait()
                queue.put_nowait(frame)


class DeviceEventPublisher:
    """Stamps device events with a per-device outbound sequence.

    Observers discard a `device_state_changed` whose `seq` is lower than one
    they already applied. The counter is never reset so ordering holds across
    reconnects.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._event_seq: dict[str, int] = {}

    def next_seq(self, mac: str) -> int:
        seq = self._event_seq.get(mac, 0) + 1
        self._event_seq[mac] = seq
        return seq

    async def state_changed(self, device: Device, source: str) -> int:
        seq = self.next_seq(device.mac_address)
        await self.bus.publish("device_state_changed", {
            "deviceId": device.mac_address,
            "state": device.public_dict(),
            "ts": int(time.time() * 1000),
            "seq": seq,
            "source": source,
        })
        return seq

    async def publish(self, event: str, data: dict) -> None:
        await self.bus.publish(event, data)
