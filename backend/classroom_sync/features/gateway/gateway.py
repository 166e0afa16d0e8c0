"""
Gateway feature: Protocol Gateway.

Owns the device connections. Each WebSocket becomes a `DeviceConnection`
that walks the state machine

    UNAUTHENTICATED -> IDENTIFIED -> ACTIVE <-> DEGRADED -> CLOSED

ACTIVE means the connection answered (or has not yet been asked) the last
liveness probe; DEGRADED means a probe is outstanding. Any inbound frame puts
the connection back to ACTIVE. A connection still DEGRADED when the next probe
comes round is closed.

The connection map is owned here and guarded by a lock: at most one
connection per hardware address, a newer identify replaces (and closes) the
older one.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable

from classroom_sync.config import Settings, get_settings
from classroom_sync.core.events import DeviceEventPublisher
from classroom_sync.core.exceptions import (
    DeviceNotRegisteredError,
    InvalidSecretError,
    ProtocolError,
    RegistryUnavailableError,
)
from classroom_sync.core.security import secrets_match
from classroom_sync.features.alerts.schemas import AlertSeverity, AlertType
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.devices.models import Device, DeviceStatus, utc_now
from classroom_sync.features.devices.registry import DeviceRegistry
from classroom_sync.features.gateway.protocol import (
    ErrorMessage,
    Frame,
    HeartbeatMessage,
    IdentifiedMessage,
    IdentifyMessage,
    PingMessage,
    PongMessage,
    StateUpdateMessage,
    SwitchResultMessage,
    parse_device_message,
)
from classroom_sync.features.gateway.sequencer import Sequencer

logger = logging.getLogger(__name__)

ConnectionListener = Callable[[str], None]


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    IDENTIFIED = "identified"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"


class Channel:
    """Transport under a device connection (a WebSocket in production)."""

    async def send_text(self, text: str) -> None:
        raise NotImplementedError

    async def close(self, code: int = 1000, reason: str = "") -> None:
        raise NotImplementedError


@dataclass(eq=False)
class DeviceConnection:
    channel: Channel
    remote_ip: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    mac: str | None = None
    is_alive: bool = True
    released: bool = False  # no longer owns its device's mapping

    @property
    def identified(self) -> bool:
        return self.state in (ConnectionState.IDENTIFIED, ConnectionState.ACTIVE, ConnectionState.DEGRADED)


class ProtocolGateway:
    def __init__(
        self,
        registry: DeviceRegistry,
        sequencer: Sequencer,
        events: DeviceEventPublisher,
        alerts: AlertService,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.sequencer = sequencer
        self.events = events
        self.alerts = alerts
        self.settings = settings or get_settings()
        self.limited_mode = False

        self._connections: dict[str, DeviceConnection] = {}
        self._lock = asyncio.Lock()
        self._connect_listeners: list[ConnectionListener] = []
        self._disconnect_listeners: list[ConnectionListener] = []

        # Deferred state_acks go back out through the owning connection
        self.sequencer.reply = self.send

    # ── Listeners ────────────────────────────────────────

    def add_connect_listener(self, listener: ConnectionListener) -> None:
        self._connect_listeners.append(listener)

    def add_disconnect_listener(self, listener: ConnectionListener) -> None:
        self._disconnect_listeners.append(listener)

    def _notify(self, listeners: list[ConnectionListener], mac: str) -> None:
        for listener in listeners:
            try:
                listener(mac)
            except Exception as e:
                logger.error(f"❌ Connection listener failed for {mac}: {e}", exc_info=True)

    # ── Connection map ───────────────────────────────────

    def open(self, channel: Channel, remote_ip: str | None = None) -> DeviceConnection:
        conn = DeviceConnection(channel=channel, remote_ip=remote_ip)
        logger.info(f"🔌 Connection {conn.id} opened from {remote_ip or 'unknown'}")
        return conn

    def is_connected(self, mac: str) -> bool:
        return mac in self._connections

    def connected_devices(self) -> list[str]:
        return list(self._connections)

    async def send(self, mac: str, message: Frame) -> bool:
        conn = self._connections.get(mac)
        if conn is None:
            return False
        return await self._send_conn(conn, message)

    async def _send_conn(self, conn: DeviceConnection, message: Frame) -> bool:
        try:
            await conn.channel.send_text(message.encode())
            return True
        except Exception as e:
            logger.warning(f"Send to connection {conn.id} ({conn.mac}) failed: {e}")
            return False

    async def _close(self, conn: DeviceConnection, code: int = 1000, reason: str = "") -> None:
        conn.state = ConnectionState.CLOSED
        try:
            await conn.channel.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Closing connection {conn.id}: {e}")

    # ── Inbound ──────────────────────────────────────────

    async def handle_message(self, conn: DeviceConnection, raw: str | bytes) -> None:
        """Per-message fault boundary: nothing raised here reaches the socket loop."""
        if conn.state == ConnectionState.CLOSED:
            return
        conn.is_alive = True
        if conn.state == ConnectionState.DEGRADED:
            conn.state = ConnectionState.ACTIVE

        try:
            message = parse_device_message(raw)
            await self._route(conn, message)
        except ProtocolError as e:
            logger.warning(f"Connection {conn.id} ({conn.mac or 'unidentified'}): {e.reason} {e.detail or ''}")
            await self._send_conn(conn, ErrorMessage(reason=e.reason, detail=e.detail))
            if e.close:
                await self._close(conn, code=1008, reason=e.reason)
        except RegistryUnavailableError as e:
            logger.error(f"❌ Registry unavailable while handling {conn.mac or conn.id}: {e}")
            await self._send_conn(conn, ErrorMessage(reason="registry_unavailable"))
        except Exception as e:
            logger.error(f"❌ Unexpected error on connection {conn.id}: {e}", exc_info=True)

    async def _route(self, conn: DeviceConnection, message) -> None:
        if isinstance(message, IdentifyMessage):
            await self._identify(conn, message)
            return

        if not conn.identified or conn.mac is None:
            logger.debug(f"Dropping '{message.type}' on unidentified connection {conn.id}")
            return

        if isinstance(message, HeartbeatMessage):
            await self._touch(conn.mac)
        elif isinstance(message, StateUpdateMessage):
            ack = await self.sequencer.handle_state_update(conn.mac, message)
            if ack is not None:
                await self._send_conn(conn, ack)
        elif isinstance(message, SwitchResultMessage):
            await self.sequencer.handle_switch_result(conn.mac, message)
        elif isinstance(message, PongMessage):
            pass

    async def _touch(self, mac: str) -> None:
        now = utc_now()

        def refresh(device: Device) -> None:
            device.last_seen = now

        await self.registry.update_device(mac, refresh)

    # ── identify ─────────────────────────────────────────

    async def _identify(self, conn: DeviceConnection, message: IdentifyMessage) -> None:
        if self.limited_mode:
            raise ProtocolError(
                "service_limited", detail="Registry unavailable, try again later", close=True
            )
        mac = message.mac
        if conn.mac is not None and conn.mac != mac:
            raise ProtocolError("already_identified", detail=f"Connection is bound to {conn.mac}")

        device = await self.registry.get_device(mac)
        if device is None:
            raise DeviceNotRegisteredError(mac)

        secret = await self.registry.get_device_secret(mac)
        secure = secrets_match(secret, message.secret)
        if secret and not secure:
            if not self.settings.ALLOW_INSECURE_IDENTIFY:
                raise InvalidSecretError(mac)
            logger.warning(f"⚠️ {mac} identified without a valid secret (insecure mode allowed)")

        await self._bind(conn, mac)
        self.sequencer.reset(mac)

        now = utc_now()

        def mark_online(d: Device) -> None:
            d.status = DeviceStatus.ONLINE
            d.last_seen = now
            if conn.remote_ip:
                d.ip_address = conn.remote_ip

        device = await self.registry.update_device(mac, mark_online) or device
        mode = "secure" if secure else "insecure"
        await self._send_conn(conn, IdentifiedMessage(
            mac=mac,
            mode=mode,
            switches=[sw.firmware_config() for sw in device.switches],
        ))
        logger.info(f"✅ {mac} identified on connection {conn.id} ({mode}, {len(device.switches)} switch(es))")

        await self.events.publish("device_connected", {
            "deviceId": mac,
            "mode": mode,
            "timestamp": int(time.time() * 1000),
        })
        await self.events.state_changed(device, "identify")
        self._notify(self._connect_listeners, mac)

    async def _bind(self, conn: DeviceConnection, mac: str) -> None:
        async with self._lock:
            previous = self._connections.get(mac)
            self._connections[mac] = conn
            conn.mac = mac
            conn.released = False
            conn.state = ConnectionState.IDENTIFIED

        if previous is not None and previous is not conn:
            previous.released = True
            logger.info(f"🔌 {mac} reconnected: closing older connection {previous.id}")
            await self._close(previous, code=1000, reason="replaced")
        conn.state = ConnectionState.ACTIVE

    # ── disconnect ───────────────────────────────────────

    async def handle_disconnect(self, conn: DeviceConnection) -> Device | None:
        """Unbind a closed connection. Returns the device if this marked it offline."""
        conn.state = ConnectionState.CLOSED
        mac = conn.mac
        if mac is None or conn.released:
            return None

        async with self._lock:
            if self._connections.get(mac) is not conn:
                # A newer connection already took over this device
                conn.released = True
                return None
            del self._connections[mac]
            conn.released = True

        logger.info(f"🔌 {mac} disconnected (connection {conn.id})")
        self.sequencer.forget(mac)
        self._notify(self._disconnect_listeners, mac)

        try:
            device = await self._mark_offline(mac, conn=conn)
        except Exception as e:
            logger.error(f"❌ Could not mark {mac} offline: {e}", exc_info=True)
            return None

        if self._connections.get(mac) is not None:
            logger.debug(f"{mac} re-identified while connection {conn.id} was closing")
            return None

        await self.events.publish("device_disconnected", {
            "deviceId": mac,
            "timestamp": int(time.time() * 1000),
        })
        if device is not None:
            await self.events.state_changed(device, "disconnect")
        return device

    async def _mark_offline(
        self, mac: str, cutoff=None, conn: DeviceConnection | None = None
    ) -> Device | None:
        """Flip the device offline. With `cutoff`, only if it is still stale.

        Skipped when a connection other than `conn` is bound to the device:
        it re-identified while this write was in flight.
        """
        changed: list[bool] = []

        def mark(d: Device) -> bool:
            changed.clear()
            current = self._connections.get(mac)
            if current is not None and current is not conn:
                return False
            if d.status == DeviceStatus.OFFLINE:
                return False
            if cutoff is not None and d.last_seen is not None and d.last_seen >= cutoff:
                return False
            d.status = DeviceStatus.OFFLINE
            changed.append(True)
            return True

        device = await self.registry.update_device(mac, mark)
        return device if changed else None

    # ── Recurring jobs ───────────────────────────────────

    async def probe_liveness(self) -> None:
        """Close connections that left the previous probe unanswered, ping the rest."""
        async with self._lock:
            connections = list(self._connections.values())

        ping = PingMessage(ts=int(time.time() * 1000))
        for conn in connections:
            try:
                if not conn.is_alive:
                    logger.warning(f"🔌 {conn.mac} missed a liveness probe, closing connection {conn.id}")
                    await self._close(conn, code=1001, reason="liveness_timeout")
                    await self.handle_disconnect(conn)
                    continue
                conn.is_alive = False
                conn.state = ConnectionState.DEGRADED
                await self._send_conn(conn, ping)
            except Exception as e:
                logger.error(f"❌ Liveness probe failed for {conn.mac}: {e}", exc_info=True)

    async def sweep_offline(self) -> int:
        """Mark devices whose last_seen is too old offline. Returns how many were flipped."""
        cutoff = utc_now() - timedelta(seconds=self.settings.STALE_DEVICE_SECONDS)
        try:
            stale = await self.registry.find_stale_devices(cutoff)
        except Exception as e:
            logger.error(f"❌ Offline sweep could not query the registry: {e}")
            return 0

        flipped = 0
        for candidate in stale:
            mac = candidate.mac_address
            try:
                conn = self._connections.get(mac)
                if conn is not None:
                    # Socket still open but silent: drop it, the device will re-identify.
                    # Unbind first so the socket loop's own disconnect is a no-op.
                    device = await self.handle_disconnect(conn)
                    await self._close(conn, code=1001, reason="stale")
                else:
                    device = await self._mark_offline(mac, cutoff)
                    if device is not None:
                        await self.events.state_changed(device, "offline_sweep")
                if device is None:
                    continue
                flipped += 1
                await self.alerts.raise_alert(
                    device,
                    AlertType.DEVICE_OFFLINE,
                    AlertSeverity.MEDIUM,
                    f"{device.name} stopped reporting and was marked offline.",
                    {"lastSeen": device.last_seen.isoformat() if device.last_seen else None},
                )
            except Exception as e:
                logger.error(f"❌ Offline sweep failed for {mac}: {e}", exc_info=True)

        if flipped:
            logger.info(f"🔌 Offline sweep marked {flipped} device(s) offline")
        return flipped

    def start(self, scheduler) -> None:
        scheduler.add_job(
            self.probe_liveness, "interval",
            seconds=self.settings.LIVENESS_PROBE_INTERVAL_SECONDS,
            id="gateway_liveness_probe", replace_existing=True,
        )
        scheduler.add_job(
            self.sweep_offline, "interval",
            seconds=self.settings.OFFLINE_SWEEP_INTERVAL_SECONDS,
            id="gateway_offline_sweep", replace_existing=True,
        )
        logger.info(
            f"📅 Gateway jobs registered (probe every {self.settings.LIVENESS_PROBE_INTERVAL_SECONDS}s, "
            f"sweep every {self.settings.OFFLINE_SWEEP_INTERVAL_SECONDS}s)"
        )

    async def close_all(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            conn.released = True
            await self._close(conn, code=1001, reason="shutdown")
