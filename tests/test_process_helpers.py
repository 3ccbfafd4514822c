import logging

from vbus2homie.core.logger_setup import configure_logger
from vbus2homie.core.signal_manager import SignalManager


def test_configure_logger_does_not_stack_handlers():
    first = configure_logger("vbus2homie.tests.setup", "debug")
    second = configure_logger("vbus2homie.tests.setup", logging.WARNING)

    assert first is second
    assert len(second.handlers) == 1
    assert second.level == logging.WARNING


def test_shutdown_runs_once(logger):
    calls = []
    signals = SignalManager(lambda: calls.append("stop"), logger)

    signals.request_shutdown()
    signals.request_shutdown()

    assert signals.wait(timeout=2) is True
    assert calls == ["stop"]


def test_shutdown_errors_still_release_waiters(logger):
    def broken():
        raise RuntimeError("serial port vanished")

    signals = SignalManager(broken, logger)
    signals.request_shutdown()

    assert signals.wait(timeout=2) is True
