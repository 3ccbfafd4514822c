"""Bus side collaborators: the raw connection and the field decoder.

Decoding VBus payloads is left to a :class:`Specification` implementation that
is plugged in through configuration (``module:attribute``). This module only
frames the serial byte stream into packets.
"""
from __future__ import annotations

import abc
import importlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List

import serial


VBUS_SYNC_BYTE = 0xAA

PacketHandler = Callable[[bytes], Any]


class BusConnectionError(Exception):
    """The bus connection could not be established."""


@dataclass(frozen=True)
class PacketField:
    name: str
    raw_value: Any


class Specification(abc.ABC):
    """Decodes packets into named fields with raw values."""

    @abc.abstractmethod
    def get_packet_fields(self, packets: List[bytes]) -> List[PacketField]:
        raise NotImplementedError


class BusConnection(abc.ABC):
    """Source of raw bus packets."""

    def __init__(self):
        self._packet_handlers: list[PacketHandler] = []

    def on_packet(self, handler: PacketHandler) -> None:
        self._packet_handlers.append(handler)

    @abc.abstractmethod
    def connect(self) -> None:
        """Open the connection, raising :class:`BusConnectionError` on failure."""
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def _emit(self, packet: bytes) -> None:
        for handler in list(self._packet_handlers):
            handler(packet)


class SerialBusConnection(BusConnection):
    """Reads a VBus serial line and emits every frame that starts with the sync byte."""

    def __init__(
        self,
        path: str,
        baudrate: int = 9600,
        logger: logging.Logger | None = None,
        serial_factory: Callable[..., serial.Serial] = serial.Serial,
    ):
        super().__init__()
        self._path = path
        self._baudrate = baudrate
        self._logger = logger or logging.getLogger("SerialBusConnection")
        self._serial_factory = serial_factory
        self._ser: serial.Serial | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def connect(self) -> None:
        try:
            self._ser = self._serial_factory(
                port=self._path,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=1,
            )
        except (serial.SerialException, OSError) as exc:
            raise BusConnectionError(f"Could not open {self._path}: {exc}") from exc
        self._stop.clear()
        self._thread = threading.Thread(target=self._read_loop, name="vbus-reader", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._ser is not None:
            try:
                self._ser.close()
            except (serial.SerialException, OSError) as exc:
                self._logger.warning(f"Error closing {self._path}: {exc}")
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)

    def _read_loop(self) -> None:
        frame = bytearray()
        in_frame = False
        while not self._stop.is_set():
            try:
                chunk = self._ser.read(self._ser.in_waiting or 1)
            except (serial.SerialException, OSError) as exc:
                if not self._stop.is_set():
                    self._logger.error(f"Serial read error on {self._path}: {exc}")
                break
            for b in chunk:
                if b == VBUS_SYNC_BYTE:
                    if in_frame and frame:
                        self._dispatch(bytes(frame))
                    frame = bytearray([b])
                    in_frame = True
                elif in_frame:
                    frame.append(b)
        if in_frame and len(frame) > 1:
            self._dispatch(bytes(frame))

    def _dispatch(self, packet: bytes) -> None:
        try:
            self._emit(packet)
        except Exception as exc:
            self._logger.error(f"Packet handler failed: {exc}")


def load_specification(target: str) -> Specification:
    """Import ``package.module:attribute``; a class or factory is called without arguments."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Decoder must look like 'module:attribute', got '{target}'")
    obj = getattr(importlib.import_module(module_name), attr)
    spec = obj() if callable(obj) and not isinstance(obj, Specification) else obj
    if not hasattr(spec, "get_packet_fields"):
        raise TypeError(f"{target} does not provide get_packet_fields()")
    return spec
