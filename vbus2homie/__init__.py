"""Republish RESOL VBus telemetry as a Homie 3.0 device over MQTT."""

__version__ = "0.1.0"
