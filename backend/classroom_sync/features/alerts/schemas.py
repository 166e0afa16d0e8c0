"""
Alerts feature: SecurityAlert records (append-only).
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from classroom_sync.features.devices.models import utc_now


class AlertType(str, Enum):
    MOTION_OVERRIDE = "motion_override"
    TIMEOUT = "timeout"
    DEVICE_OFFLINE = "device_offline"


class AlertSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


class SecurityAlert(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    device_id: str
    device_name: str = ""
    location: str = ""
    classroom: str = ""
    type: AlertType
    severity: AlertSeverity
    message: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    acknowledged: bool = False

    def event_payload(self) -> dict:
        data = self.model_dump(mode="json", exclude={"created_at", "acknowledged"})
        data["timestamp"] = self.created_at.isoformat()
        return data
