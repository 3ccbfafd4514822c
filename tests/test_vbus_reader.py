"""Routing of decoded VBus fields onto the Homie device."""

import pytest

from vbus2homie.core.settings_loader import BridgeConfig
from vbus2homie.homie.homie_device import HomieDevice
from vbus2homie.homie.message_channel import MessageChannel
from vbus2homie.vbus.bus_transport import BusConnection, BusConnectionError, PacketField, Specification
from vbus2homie.vbus.vbus_reader import VbusReader

from conftest import FakeMqtt


class FakeConnection(BusConnection):
    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.closed = False

    def connect(self):
        if self.fail:
            raise BusConnectionError("no such device")

    def close(self):
        self.closed = True

    def feed(self, packet):
        self._emit(packet)


class DictSpecification(Specification):
    """Packets are dicts of field name -> raw value."""

    def get_packet_fields(self, packets):
        return [PacketField(name, value) for packet in packets for name, value in packet.items()]


@pytest.fixture
def reader_parts(timers, recorder, logger):
    devices = []

    def factory(dev_id, name, config, logger=None):
        channel = MessageChannel()
        channel.subscribe(recorder)
        device = HomieDevice(
            dev_id,
            name,
            base_topic=config.homie_base_topic,
            mqtt=FakeMqtt(),
            messages=channel,
            timer_factory=timers,
            logger=logger,
        )
        devices.append(device)
        return device

    connection = FakeConnection()
    reader = VbusReader(
        connection,
        DictSpecification(),
        BridgeConfig(),
        device_factory=factory,
        timer_factory=timers,
        logger=logger,
    )
    return reader, connection, devices


def _throttle_timers(timers):
    return [t for t in timers.active() if t.interval == 10.0]


def test_start_builds_device_tree(reader_parts, recorder):
    reader, _, devices = reader_parts

    assert reader.start() is True

    assert len(devices) == 1
    assert devices[0].dev_id == "vbus"
    assert devices[0].name == "Solar-Info"
    pairs = recorder.pairs()
    assert ("homie/vbus/$nodes", "kollektor,speicher,pumpe") in pairs
    assert ("homie/vbus/speicher/$properties", "temperaturUnten,temperaturOben") in pairs
    assert ("homie/vbus/kollektor/temperatur/$datatype", "float") in pairs
    assert recorder.topics().count("homie/vbus/$nodes") == 1


def test_fields_are_routed_to_properties(reader_parts, recorder, timers):
    reader, connection, _ = reader_parts
    reader.start()
    recorder.clear()

    connection.feed({
        "Temperature sensor 1": 11.5,
        "Temperature sensor 2": 32,
        "Temperature sensor 3": 65.2,
        "Pump speed relay 1": 50,
        "Heat quantity": 1234,
    })
    _throttle_timers(timers)[0].fire()

    assert recorder.pairs() == [
        ("homie/vbus/kollektor/temperatur", "11.5"),
        ("homie/vbus/speicher/temperaturUnten", "32"),
        ("homie/vbus/speicher/temperaturOben", "65.2"),
        ("homie/vbus/pumpe/rpm", "50"),
    ]


def test_only_latest_batch_of_window_is_applied(reader_parts, recorder, timers):
    reader, connection, _ = reader_parts
    reader.start()
    recorder.clear()

    for rpm in (10, 20, 30, 90):
        connection.feed({"Pump speed relay 1": rpm})
    throttles = _throttle_timers(timers)
    assert len(throttles) == 1
    throttles[0].fire()

    assert recorder.pairs() == [("homie/vbus/pumpe/rpm", "90")]


def test_batch_without_whitelisted_fields_changes_nothing(reader_parts, recorder, timers):
    reader, connection, _ = reader_parts
    reader.start()
    recorder.clear()

    connection.feed({"System date": 5})

    assert _throttle_timers(timers) == []
    assert recorder.pairs() == []


def test_unrelated_packet_does_not_replace_pending_batch(reader_parts, recorder, timers):
    reader, connection, _ = reader_parts
    reader.start()
    recorder.clear()

    connection.feed({"Pump speed relay 1": 50})
    connection.feed({"System date": 5})
    _throttle_timers(timers)[0].fire()

    assert recorder.pairs() == [("homie/vbus/pumpe/rpm", "50")]


def test_connect_failure_is_logged_not_raised(timers, logger):
    created = []
    reader = VbusReader(
        FakeConnection(fail=True),
        DictSpecification(),
        BridgeConfig(),
        device_factory=lambda *a, **kw: created.append(a),
        timer_factory=timers,
        logger=logger,
    )

    assert reader.start() is False
    assert created == []


def test_packets_before_device_are_dropped(reader_parts, timers):
    reader, connection, _ = reader_parts

    connection.feed({"Pump speed relay 1": 50})

    assert timers == []


def test_decoder_errors_do_not_break_the_stream(reader_parts, recorder, timers):
    reader, connection, _ = reader_parts
    reader.start()
    recorder.clear()

    connection.feed("not a dict")
    connection.feed({"Pump speed relay 1": 70})
    _throttle_timers(timers)[0].fire()

    assert recorder.pairs() == [("homie/vbus/pumpe/rpm", "70")]


def test_stop_closes_everything(reader_parts, timers):
    reader, connection, devices = reader_parts
    reader.start()
    connection.feed({"Pump speed relay 1": 50})

    reader.stop()

    assert connection.closed is True
    assert all(t.cancelled for t in timers)
