"""Glue between the VBus packet stream and the ``vbus`` Homie device.

This produces the following topics (values depend on the controller)::

    homie/vbus/$homie: 3.0
    homie/vbus/$name: Solar-Info
    homie/vbus/$nodes: kollektor,speicher,pumpe
    homie/vbus/kollektor/$name: Kollektor
    homie/vbus/kollektor/$type: nodeType
    homie/vbus/kollektor/$properties: temperatur
    homie/vbus/kollektor/temperatur: 11
    homie/vbus/kollektor/temperatur/$name: temperatur
    homie/vbus/kollektor/temperatur/$datatype: float
    homie/vbus/speicher/$properties: temperaturUnten,temperaturOben
    homie/vbus/speicher/temperaturUnten: 32
    homie/vbus/speicher/temperaturOben: 65
    homie/vbus/pumpe/$properties: rpm
    homie/vbus/pumpe/rpm: 50
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Tuple

from vbus2homie.core.settings_loader import BridgeConfig
from vbus2homie.homie.homie_device import HomieDevice
from vbus2homie.homie.homie_node import Node, PropertySpec
from vbus2homie.vbus.bus_transport import BusConnection, BusConnectionError, PacketField, Specification
from vbus2homie.vbus.throttle import TrailingThrottle


PUMP_SPEED_RELAY_1 = "Pump speed relay 1"
TEMPERATURE_SENSOR_1 = "Temperature sensor 1"
TEMPERATURE_SENSOR_2 = "Temperature sensor 2"
TEMPERATURE_SENSOR_3 = "Temperature sensor 3"

# decoded field name -> (node id, property name)
FIELD_MAP: Dict[str, Tuple[str, str]] = {
    TEMPERATURE_SENSOR_1: ("kollektor", "temperatur"),
    TEMPERATURE_SENSOR_2: ("speicher", "temperaturUnten"),
    TEMPERATURE_SENSOR_3: ("speicher", "temperaturOben"),
    PUMP_SPEED_RELAY_1: ("pumpe", "rpm"),
}

# most of the time only a few packet fields are needed
WHITELIST = frozenset(FIELD_MAP)


def build_nodes() -> List[Node]:
    return [
        Node("kollektor", "Kollektor", properties={"temperatur": PropertySpec("float")}),
        Node(
            "speicher",
            "Speicher",
            properties={
                "temperaturUnten": PropertySpec("float"),
                "temperaturOben": PropertySpec("float"),
            },
        ),
        Node("pumpe", "Pumpe", properties={"rpm": PropertySpec("float")}),
    ]


class VbusReader:
    def __init__(
        self,
        connection: BusConnection,
        specification: Specification,
        config: BridgeConfig,
        device_factory: Callable[..., HomieDevice] = HomieDevice.create,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        logger: logging.Logger | None = None,
    ):
        self.connection = connection
        self.homie_device: HomieDevice | None = None
        self._specification = specification
        self._config = config
        self._device_factory = device_factory
        self._timer_factory = timer_factory
        self._logger = logger or logging.getLogger("VbusReader")
        self._nodes: Dict[str, Node] = {}
        self._throttle: TrailingThrottle | None = None

    def start(self) -> bool:
        """Connect the bus and create the Homie device. Returns False when the bus is unavailable."""
        self.connection.on_packet(self._on_packet)
        try:
            self.connection.connect()
        except BusConnectionError as exc:
            self._logger.error(f"Connection failed: {exc}")
            return False
        self._logger.info("Connected to serial port")
        self._init_homie_device()
        return True

    def stop(self) -> None:
        if self._throttle is not None:
            self._throttle.cancel()
        self.connection.close()
        if self.homie_device is not None:
            self.homie_device.stop()

    # ------------------------------------------------------------------
    # incoming VBus → Homie
    # ------------------------------------------------------------------
    def _on_packet(self, packet: Any) -> None:
        self._logger.debug(f"Packet received: {packet!r}")
        if self._throttle is None:
            self._logger.debug("Homie device not initialized yet, packet dropped")
            return
        try:
            packet_fields = self._specification.get_packet_fields([packet])
        except Exception as exc:
            self._logger.error(f"Could not decode packet: {exc}")
            return
        infos = [f for f in packet_fields if f.name in WHITELIST]
        if not infos:
            return
        self._throttle.submit(infos)

    def _init_homie_device(self) -> None:
        cfg = self._config
        self.homie_device = self._device_factory(cfg.device_id, cfg.device_name, cfg, logger=self._logger)
        nodes = build_nodes()
        self._nodes = {n.node_id: n for n in nodes}
        self.homie_device.add_nodes(*nodes)
        self._throttle = TrailingThrottle(
            cfg.throttle_window, self._apply, timer_factory=self._timer_factory, logger=self._logger
        )
        self._logger.info("Homie device initialized")

    def _apply(self, infos: List[PacketField]) -> None:
        for field_name, (node_id, prop_name) in FIELD_MAP.items():
            self._update_if_present(infos, field_name, node_id, prop_name)

    def _update_if_present(self, infos: List[PacketField], info_name: str, node_id: str, prop_name: str):
        info = next((i for i in infos if i.name == info_name), None)
        if info is not None:
            self._nodes[node_id].properties[prop_name].value = info.raw_value
