"""Unit tests for the device wire protocol."""
import json

import pytest

from classroom_sync.core.exceptions import ProtocolError
from classroom_sync.features.gateway.protocol import (
    IdentifyMessage,
    StateAckMessage,
    StateUpdateMessage,
    SwitchCommandMessage,
    SwitchResultMessage,
    parse_device_message,
    parse_server_message,
)


class TestDeviceMessages:
    def test_identify_normalizes_mac(self):
        msg = parse_device_message('{"type":"identify","mac":"aa-bb-cc-dd-ee-01","secret":"x"}')
        assert isinstance(msg, IdentifyMessage)
        assert msg.mac == "AA:BB:CC:DD:EE:01"
        assert msg.secret == "x"

    def test_authenticate_alias_and_mac_address_field(self):
        msg = parse_device_message('{"type":"authenticate","macAddress":"aa:bb:cc:dd:ee:01"}')
        assert isinstance(msg, IdentifyMessage)
        assert msg.mac == "AA:BB:CC:DD:EE:01"
        assert msg.secret is None

    def test_state_update_with_legacy_pir_object(self):
        msg = parse_device_message(json.dumps({
            "type": "state_update", "seq": 4, "ts": 1200,
            "switches": [{"gpio": 26, "state": True}, {"relayGpio": 27, "state": False}],
            "pir": {"enabled": True, "triggered": True},
        }))
        assert isinstance(msg, StateUpdateMessage)
        assert [(s.gpio, s.state) for s in msg.switches] == [(26, True), (27, False)]
        assert msg.pir is True

    def test_switch_result_camel_case_fields(self):
        msg = parse_device_message(json.dumps({
            "type": "switch_result", "gpio": 26, "requestedState": True,
            "actualState": False, "success": False, "reason": "stale_seq", "seq": 3, "ts": 10,
        }))
        assert isinstance(msg, SwitchResultMessage)
        assert msg.requested_state is True
        assert msg.actual_state is False
        assert msg.reason == "stale_seq"

    def test_invalid_json_is_malformed(self):
        with pytest.raises(ProtocolError) as exc:
            parse_device_message("{not json")
        assert exc.value.reason == "malformed_message"

    def test_missing_type_is_malformed(self):
        with pytest.raises(ProtocolError) as exc:
            parse_device_message('{"mac":"AA:BB:CC:DD:EE:01"}')
        assert exc.value.reason == "malformed_message"

    def test_unknown_type(self):
        with pytest.raises(ProtocolError) as exc:
            parse_device_message('{"type":"full_state"}')
        assert exc.value.reason == "unknown_type"

    def test_bad_field_types_are_malformed(self):
        with pytest.raises(ProtocolError) as exc:
            parse_device_message('{"type":"switch_result","gpio":"twenty-six","success":true}')
        assert exc.value.reason == "malformed_message"
        assert "gpio" in exc.value.detail


class TestServerMessages:
    def test_switch_command_encodes_compact(self):
        text = SwitchCommandMessage(mac="AA:BB:CC:DD:EE:01", gpio=26, state=True, seq=5).encode()
        assert "\n" not in text
        assert json.loads(text) == {
            "type": "switch_command", "mac": "AA:BB:CC:DD:EE:01", "gpio": 26, "state": True, "seq": 5,
        }

    def test_state_ack_parses_back(self):
        msg = parse_server_message(StateAckMessage(ts=99, changed=2).encode())
        assert isinstance(msg, StateAckMessage)
        assert (msg.ts, msg.changed) == (99, 2)

    def test_device_frame_is_not_a_server_frame(self):
        with pytest.raises(ProtocolError) as exc:
            parse_server_message('{"type":"heartbeat"}')
        assert exc.value.reason == "unknown_type"
