"""
Commands feature: request / result shapes.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ToggleStatus(str, Enum):
    SENT = "sent"                # command written to the device connection
    QUEUED = "queued"            # device offline, intent persisted for the next connect
    IGNORED = "ignored"          # same switch already in flight or cooling down
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"  # service running in limited mode


class ToggleOutcome(BaseModel):
    status: ToggleStatus
    device_id: str
    switch_id: str | None = None
    desired_state: bool | None = None
    seq: int | None = None
    reason: str | None = None


class BulkOutcome(BaseModel):
    changed: int = 0
    outcomes: list[ToggleOutcome] = Field(default_factory=list)


class ToggleRequest(BaseModel):
    state: bool | None = None  # None = flip the current state


class BulkToggleRequest(BaseModel):
    state: bool
