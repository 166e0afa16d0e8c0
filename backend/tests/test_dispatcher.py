"""Unit tests for the Command Dispatcher."""
import asyncio

from classroom_sync.config import Settings
from classroom_sync.features.commands.schemas import ToggleStatus
from classroom_sync.features.devices.models import DeviceStatus

from conftest import MAC, Harness, make_device, run


def fast_settings(**overrides) -> Settings:
    values = dict(QUEUE_FLUSH_DELAY_SECONDS=0.01, RECONCILE_DELAY_SECONDS=0.01)
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestRequestToggle:
    def test_connected_device_gets_switch_command(self, harness):
        async def scenario():
            await harness.seed()
            _, channel = await harness.connect()
            outcome = await harness.dispatcher.request_toggle(MAC, "sw-light", True)

            assert outcome.status == ToggleStatus.SENT
            command = channel.of_type("switch_command")[0]
            assert command == {"type": "switch_command", "mac": MAC, "gpio": 26, "state": True, "seq": outcome.seq}

        run(scenario())

    def test_offline_toggle_is_queued_with_one_intent(self, harness):
        async def scenario():
            await harness.seed()
            outcome = await harness.dispatcher.request_toggle(MAC, "sw-light")

            assert outcome.status == ToggleStatus.QUEUED
            assert outcome.desired_state is True
            device = await harness.registry.get_device(MAC)
            assert device.status != DeviceStatus.ONLINE
            assert [(i.gpio, i.desired_state) for i in device.queued_intents] == [(26, True)]

        run(scenario())

    def test_queued_intents_dedupe_by_pin(self):
        h = Harness(fast_settings(TOGGLE_COOLDOWN_SECONDS=0))

        async def scenario():
            await h.seed()
            await h.dispatcher.request_toggle(MAC, "sw-light", True)
            await h.dispatcher.request_toggle(MAC, "sw-light", False)
            device = await h.registry.get_device(MAC)
            assert [(i.gpio, i.desired_state) for i in device.queued_intents] == [(26, False)]

        run(scenario())

    def test_second_toggle_within_cooldown_is_noop(self, harness):
        async def scenario():
            await harness.seed()
            first = await harness.dispatcher.request_toggle(MAC, "sw-light")
            second = await harness.dispatcher.request_toggle(MAC, "sw-light")

            assert first.status == ToggleStatus.QUEUED
            assert second.status == ToggleStatus.IGNORED
            assert second.reason == "cooldown"
            device = await harness.registry.get_device(MAC)
            assert len(device.queued_intents) == 1

            harness.clock.advance(harness.settings.TOGGLE_COOLDOWN_SECONDS + 0.1)
            third = await harness.dispatcher.request_toggle(MAC, "sw-light")
            assert third.status == ToggleStatus.QUEUED

        run(scenario())

    def test_concurrent_requests_only_one_passes_guard(self, harness):
        async def scenario():
            await harness.seed()
            await harness.connect()
            outcomes = await asyncio.gather(
                harness.dispatcher.request_toggle(MAC, "sw-fan", True),
                harness.dispatcher.request_toggle(MAC, "sw-fan", True),
            )
            statuses = sorted(o.status.value for o in outcomes)
            assert statuses == ["ignored", "sent"]

        run(scenario())

    def test_unknown_switch_is_not_found(self, harness):
        async def scenario():
            await harness.seed()
            outcome = await harness.dispatcher.request_toggle(MAC, "nope")
            assert outcome.status == ToggleStatus.NOT_FOUND
            unknown = await harness.dispatcher.request_toggle("AA:BB:CC:DD:EE:77", "sw-light")
            assert unknown.status == ToggleStatus.NOT_FOUND

        run(scenario())

    def test_limited_mode_is_unavailable(self, harness):
        async def scenario():
            await harness.seed()
            harness.gateway.limited_mode = True
            outcome = await harness.dispatcher.request_toggle(MAC, "sw-light")
            assert outcome.status == ToggleStatus.UNAVAILABLE

        run(scenario())

    def test_reconcile_timer_releases_guard_and_republishes(self):
        h = Harness(fast_settings())

        async def scenario():
            await h.seed()
            await h.connect()
            await h.dispatcher.request_toggle(MAC, "sw-light", True)
            assert h.dispatcher.is_in_flight(MAC, "sw-light")

            await asyncio.sleep(0.05)
            assert not h.dispatcher.is_in_flight(MAC, "sw-light")
            assert h.bus.named("device_state_changed")[-1]["source"] in ("reconcile", "intents_flushed")

        run(scenario())


class TestQueuedIntentFlush:
    def test_flush_sends_only_disagreeing_intents_and_clears_all(self):
        h = Harness(fast_settings(TOGGLE_COOLDOWN_SECONDS=0))

        async def scenario():
            await h.seed()
            await h.dispatcher.request_toggle(MAC, "sw-light", True)   # disagrees with stored off
            await h.dispatcher.request_toggle(MAC, "sw-fan", False)    # already off

            _, channel = await h.connect()
            await asyncio.sleep(0.05)

            commands = channel.of_type("switch_command")
            assert [(c["gpio"], c["state"]) for c in commands] == [(26, True)]
            device = await h.registry.get_device(MAC)
            assert device.queued_intents == []

        run(scenario())

    def test_intent_discarded_when_first_report_already_matches(self):
        h = Harness(fast_settings(QUEUE_FLUSH_DELAY_SECONDS=0.05))

        async def scenario():
            await h.seed()
            await h.dispatcher.request_toggle(MAC, "sw-light", True)

            conn, channel = await h.connect()
            # Device's first report: someone already switched the light on by hand
            await h.send(conn, {"type": "state_update", "seq": 1, "ts": 1,
                                "switches": [{"gpio": 26, "state": True}, {"gpio": 27, "state": False}]})
            await asyncio.sleep(0.1)

            assert channel.of_type("switch_command") == []
            device = await h.registry.get_device(MAC)
            assert device.queued_intents == []

        run(scenario())

    def test_disconnect_before_flush_revokes_timer(self):
        h = Harness(fast_settings(QUEUE_FLUSH_DELAY_SECONDS=0.05))

        async def scenario():
            await h.seed()
            await h.dispatcher.request_toggle(MAC, "sw-light", True)
            conn, _ = await h.connect()
            await h.gateway.handle_disconnect(conn)
            await asyncio.sleep(0.1)

            device = await h.registry.get_device(MAC)
            assert len(device.queued_intents) == 1

        run(scenario())


class TestBulk:
    def test_toggle_by_type_location_and_all(self):
        h = Harness(fast_settings(TOGGLE_COOLDOWN_SECONDS=0))

        async def scenario():
            await h.seed()
            await h.seed(make_device("AA:BB:CC:DD:EE:02", location="Block B"))
            await h.registry.insert_device(make_device("AA:BB:CC:DD:EE:03"), None)  # never connects
            await h.connect()
            await h.connect(mac="AA:BB:CC:DD:EE:02")

            by_type = await h.dispatcher.toggle_by_type("fan", True)
            assert by_type.changed == 2
            assert {o.switch_id for o in by_type.outcomes} == {"sw-fan"}
            await asyncio.sleep(0.05)  # reconcile timers release the in-flight guards

            by_location = await h.dispatcher.toggle_by_location("Block B", True)
            assert by_location.changed == 2
            await asyncio.sleep(0.05)

            everything = await h.dispatcher.toggle_all(True)
            assert everything.changed == 4
            assert {o.device_id for o in everything.outcomes} == {MAC, "AA:BB:CC:DD:EE:02"}

        run(scenario())

    def test_push_state_needs_connection(self, harness):
        async def scenario():
            await harness.seed()
            assert await harness.dispatcher.push_state(MAC, 26, True) is False
            _, channel = await harness.connect()
            assert await harness.dispatcher.push_state(MAC, 26, True) is True
            assert channel.of_type("switch_command")[-1]["gpio"] == 26

        run(scenario())
