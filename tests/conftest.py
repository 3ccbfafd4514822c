"""Shared fakes: no broker, serial port or real timers are needed by the tests."""

import logging

import pytest

from vbus2homie.homie.homie_device import HomieDevice
from vbus2homie.homie.message_channel import MessageChannel


class FakeMqtt:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.published = []
        self.subscribe_calls = []
        self.handlers = {}
        self.connect_listeners = []
        self.subscribe_result = True
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def add_connect_listener(self, listener):
        self.connect_listeners.append(listener)

    def connect(self):
        for listener in self.connect_listeners:
            listener()

    def publish(self, topic, payload, qos=1, retain=True):
        self.published.append((topic, payload, qos, retain))
        return True

    def subscribe(self, topic, handler, qos=1):
        self.subscribe_calls.append(topic)
        self.handlers[topic] = handler
        return self.subscribe_result


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        if not self.cancelled:
            self.function()


class Timers(list):
    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.append(timer)
        return timer

    def active(self):
        return [t for t in self if t.started and not t.cancelled and not t.fired]


class Recorder(list):
    def __call__(self, message):
        self.append(message)

    def topics(self):
        return [m.topic for m in self]

    def pairs(self):
        return [(m.topic, m.message) for m in self]


@pytest.fixture
def logger():
    return logging.getLogger("vbus2homie.tests")


@pytest.fixture
def timers():
    return Timers()


@pytest.fixture
def mqtt():
    return FakeMqtt()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_device(mqtt, timers, recorder, logger):
    def _make(**kwargs):
        channel = MessageChannel(logger=logger)
        channel.subscribe(recorder)
        params = dict(
            base_topic="homie",
            mqtt=mqtt,
            messages=channel,
            timer_factory=timers,
            logger=logger,
        )
        params.update(kwargs)
        return HomieDevice("vbus", "Solar-Info", **params)
    return _make
