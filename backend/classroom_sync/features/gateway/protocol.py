"""
Gateway feature: wire protocol between devices and the gateway.

Every frame is a single JSON object with a `type` tag. Each direction is a
discriminated union; anything that fails validation raises ProtocolError
(reason `malformed_message` / `unknown_type`) instead of reaching the
business logic half-parsed.
"""

import json
from typing import Annotated, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from classroom_sync.core.exceptions import ProtocolError
from classroom_sync.features.devices.models import normalize_mac


class Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def encode(self) -> str:
        """Compact, newline-free JSON."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ── Device → server ──────────────────────────────────────

class IdentifyMessage(Frame):
    type: Literal["identify", "authenticate"] = "identify"
    mac: str = Field(validation_alias=AliasChoices("mac", "macAddress"))
    secret: str | None = Field(default=None, validation_alias=AliasChoices("secret", "signature"))

    @field_validator("mac")
    @classmethod
    def _normalize(cls, value: str) -> str:
        if not value:
            raise ValueError("missing_mac")
        return normalize_mac(value)


class HeartbeatMessage(Frame):
    type: Literal["heartbeat"] = "heartbeat"
    mac: str | None = None


class SwitchStateReport(Frame):
    gpio: int = Field(validation_alias=AliasChoices("gpio", "relayGpio"))
    state: bool


class StateUpdateMessage(Frame):
    type: Literal["state_update"] = "state_update"
    seq: int | None = None  # absent on legacy firmware, refused when MESSAGE_AUTH_REQUIRED
    ts: int = 0
    switches: list[SwitchStateReport] = Field(default_factory=list)
    pir: bool | None = None
    sig: str | None = None

    @field_validator("pir", mode="before")
    @classmethod
    def _pir_flag(cls, value):
        # Older firmware reports {"enabled": .., "triggered": ..}
        if isinstance(value, dict):
            return bool(value.get("triggered"))
        return value


class SwitchResultMessage(Frame):
    type: Literal["switch_result"] = "switch_result"
    gpio: int
    requested_state: bool | None = Field(default=None, alias="requestedState")
    actual_state: bool | None = Field(default=None, alias="actualState")
    success: bool
    reason: str | None = None
    seq: int | None = None
    ts: int = 0
    sig: str | None = None


class PongMessage(Frame):
    type: Literal["pong"] = "pong"


DeviceMessage = Annotated[
    Union[IdentifyMessage, HeartbeatMessage, StateUpdateMessage, SwitchResultMessage, PongMessage],
    Field(discriminator="type"),
]


# ── Server → device ──────────────────────────────────────

class IdentifiedMessage(Frame):
    type: Literal["identified"] = "identified"
    mac: str
    mode: Literal["secure", "insecure"]
    switches: list[dict] = Field(default_factory=list)


class SwitchCommandMessage(Frame):
    type: Literal["switch_command"] = "switch_command"
    mac: str
    gpio: int
    state: bool
    seq: int


class ConfigUpdateMessage(Frame):
    type: Literal["config_update"] = "config_update"
    switches: list[dict] = Field(default_factory=list)


class StateAckMessage(Frame):
    type: Literal["state_ack"] = "state_ack"
    ts: int
    changed: int


class PingMessage(Frame):
    type: Literal["ping"] = "ping"
    ts: int = 0


class ErrorMessage(Frame):
    type: Literal["error"] = "error"
    reason: str
    detail: str | None = None


ServerMessage = Annotated[
    Union[IdentifiedMessage, SwitchCommandMessage, ConfigUpdateMessage, StateAckMessage, PingMessage, ErrorMessage],
    Field(discriminator="type"),
]

_device_adapter: TypeAdapter = TypeAdapter(DeviceMessage)
_server_adapter: TypeAdapter = TypeAdapter(ServerMessage)

DEVICE_MESSAGE_TYPES = {"identify", "authenticate", "heartbeat", "state_update", "switch_result", "pong"}
SERVER_MESSAGE_TYPES = {"identified", "switch_command", "config_update", "state_ack", "ping", "error"}


def _decode(raw: str | bytes, adapter: TypeAdapter, known: set[str]):
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        raise ProtocolError("malformed_message", detail="Frame is not valid JSON")

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("malformed_message", detail="Frame has no 'type'")
    if data["type"] not in known:
        raise ProtocolError("unknown_type", detail=f"Unsupported type '{data['type']}'")

    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors()[:3])
        raise ProtocolError("malformed_message", detail=f"Invalid fields: {fields}")


def parse_device_message(raw: str | bytes) -> DeviceMessage:
    return _decode(raw, _device_adapter, DEVICE_MESSAGE_TYPES)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    return _decode(raw, _server_adapter, SERVER_MESSAGE_TYPES)
