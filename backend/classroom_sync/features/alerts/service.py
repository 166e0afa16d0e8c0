"""
Alerts feature: Service layer for security alerts and activity entries.
"""

import logging
from typing import Awaitable, Callable

from classroom_sync.core.events import EventBus
from classroom_sync.core.zalo import send_alert_notification
from classroom_sync.features.alerts.schemas import AlertSeverity, AlertType, SecurityAlert
from classroom_sync.features.devices.models import ActivityEntry, Device, Switch
from classroom_sync.features.devices.registry import DeviceRegistry

logger = logging.getLogger(__name__)

Notifier = Callable[[SecurityAlert], Awaitable[bool]]


class AlertService:
    """Appends alerts / activity and announces alerts to observers."""

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: EventBus,
        notifier: Notifier | None = send_alert_notification,
    ):
        self.registry = registry
        self.bus = bus
        self.notifier = notifier

    async def raise_alert(
        self,
        device: Device,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        metadata: dict | None = None,
    ) -> SecurityAlert:
        alert = SecurityAlert(
            device_id=device.mac_address,
            device_name=device.name,
            location=device.location,
            classroom=device.classroom,
            type=alert_type,
            severity=severity,
            message=message,
            metadata=metadata or {},
        )
        await self.registry.append_alert(alert)
        await self.bus.publish("security_alert", alert.event_payload())
        logger.warning(f"🚨 {severity.value} alert on {device.mac_address}: {message}")

        if severity == AlertSeverity.HIGH and self.notifier is not None:
            await self.notifier(alert)
        return alert

    async def record_activity(
        self,
        device: Device,
        action: str,
        triggered_by: str,
        switch: Switch | None = None,
        metadata: dict | None = None,
    ) -> None:
        """Best-effort: a failed activity write is logged, never raised."""
        entry = ActivityEntry(
            device_id=device.mac_address,
            device_name=device.name,
            switch_id=switch.id if switch else None,
            switch_name=switch.name if switch else None,
            action=action,
            triggered_by=triggered_by,
            classroom=device.classroom,
            location=device.location,
            metadata=metadata or {},
        )
        try:
            await self.registry.append_activity(entry)
        except Exception as e:
            logger.warning(f"Activity log failed for {device.mac_address}: {e}")
