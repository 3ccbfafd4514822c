"""Homie 3.0 runtime for publishing one device with a static set of nodes.

Topics are published under ``<base>/<device_id>``:

1. ``$homie``, ``$name`` and ``$state`` when the device initialises,
2. for every structural change ``$state=init``, then the node and property
   attributes (``$name``, ``$type``, ``$properties``, ``$datatype``, …) and
   ``$nodes``,
3. ``$state=ready`` after a grace delay once all required nodes exist,
4. property values whenever they are assigned,
5. ``$stats/*`` on a fixed interval, plus ``$state=lost`` when no value has
   been seen for more than six hours.

All messages go through one :class:`MessageChannel` per device, so the broker
sees them in exactly that order, even when the MQTT connection comes up after
the first messages were produced.

Typical usage
-------------

```python
device = HomieDevice.create("vbus", "Solar-Info", config)
device.add_nodes(
    Node("pumpe", "Pumpe", properties={"rpm": PropertySpec("float")}),
)
device.get_node_by_id("pumpe").properties["rpm"].value = 50
```
"""
from __future__ import annotations

import enum
import functools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from vbus2homie.core.mqtt_client_wrapper import MqttModule
from vbus2homie.core.settings_loader import BridgeConfig
from vbus2homie.homie.homie_node import Node, Property, Value, format_value
from vbus2homie.homie.message_channel import MessageChannel, OutboundMessage


HOMIE_VERSION = "3.0"
NODE_TYPE = "nodeType"
READY_DELAY = 5.0
HEALTH_TIMEOUT = timedelta(hours=6)
STATS_FIELDS = "uptime,signal,battery,voltage,firstSeen,lastSeen"


class DeviceState(str, enum.Enum):
    INIT = "init"
    READY = "ready"
    LOST = "lost"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class HomieStats:
    interval: int = 120
    uptime: int = 0
    signal: float = 0
    voltage: float = 0
    battery: float = 100
    first_seen: datetime = field(default_factory=_utcnow)
    last_seen: datetime = field(default_factory=_utcnow)


class HomieDevice:
    def __init__(
        self,
        dev_id: str,
        name: str | None = None,
        base_topic: str = "homie",
        mqtt: MqttModule | None = None,
        messages: MessageChannel | None = None,
        required_nodes: Iterable[str] = (),
        stats: HomieStats | None = None,
        ready_delay: float = READY_DELAY,
        on_set: Callable[[str, str, str], Any] | None = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        logger: logging.Logger | None = None,
    ):
        self.dev_id = dev_id
        self.name = name or dev_id
        self.device_topic = f"{base_topic}/{dev_id}"
        self.logger = logger or logging.getLogger(f"HomieDevice[{dev_id}]")
        self.messages = messages or MessageChannel(logger=self.logger)
        self.required_nodes = list(required_nodes)
        self.stats = stats or HomieStats()
        self.nodes: list[Node] = []
        self.current_state = DeviceState.INIT
        # True once a transition to ready has been scheduled
        self.ready = False

        self._mqtt = mqtt
        self._on_set_cb = on_set
        self._ready_delay = ready_delay
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._ready_timer = None
        self._ready_generation = 0
        self._stats_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._connected_once = False

    @classmethod
    def create(
        cls,
        dev_id: str,
        friendly_name: str | None,
        config: BridgeConfig,
        on_set: Callable[[str, str, str], Any] | None = None,
        logger: logging.Logger | None = None,
        mqtt_factory: Callable[..., MqttModule] = MqttModule,
    ) -> HomieDevice:
        """Build a device together with its MQTT connection and start both.

        The broker gets ``<device>/$state = lost`` as last will. Messages
        produced before the connection is up are replayed from the channel
        buffer on the first connect, and every connect republishes identity,
        structure and current values.
        """
        logger = logger or logging.getLogger(f"HomieDevice[{dev_id}]")
        device_topic = f"{config.homie_base_topic}/{dev_id}"
        mqtt = mqtt_factory(
            broker_url=config.broker_url,
            client_id=f"General Purpose Mqtt To Homie writer for {dev_id}",
            logger=logger,
            username=config.username,
            password=config.password,
            keepalive=60,
            reconnect_delay=2,
            lwt_topic=f"{device_topic}/$state",
            lwt_payload=DeviceState.LOST.value,
            lwt_qos=1,
            lwt_retain=True,
            paho_debug=config.paho_debug,
        )
        device = cls(
            dev_id,
            friendly_name,
            base_topic=config.homie_base_topic,
            mqtt=mqtt,
            required_nodes=config.required_nodes,
            stats=HomieStats(interval=config.stats_interval),
            on_set=on_set,
            logger=logger,
        )
        mqtt.add_connect_listener(device._on_mqtt_connect)
        device.init()
        mqtt.start()
        return device

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def init(self) -> None:
        with self._lock:
            self.current_state = DeviceState.INIT
            self._send_device_info()
            self._start_stats_timer()
        self.logger.info(f"Initializing device {self.dev_id}")

    def change_device_state(self, desired_state: DeviceState) -> None:
        with self._lock:
            self._publish(f"{self.device_topic}/$state", desired_state.value, log_level="info")
            self.current_state = desired_state

    def update_nodes(self) -> None:
        """Republish the whole node/property structure and schedule ``ready``."""
        with self._lock:
            if self.current_state != DeviceState.INIT:
                # metadata changes have to happen in init
                self.change_device_state(DeviceState.INIT)

            for node in self.nodes:
                properties = node.all_properties()
                self._publish(f"{node.topic}/$name", node.name)
                self._publish(f"{node.topic}/$type", NODE_TYPE)
                self._publish(f"{node.topic}/$properties", ",".join(properties))

                for prop_name, prop in properties.items():
                    self._publish(f"{prop.topic}/$name", prop_name)
                    self._publish(f"{prop.topic}/$datatype", prop.datatype)
                    if prop.format:
                        self._publish(f"{prop.topic}/$format", prop.format)
                    if prop.settable:
                        self._publish(f"{prop.topic}/$settable", "true")
                        if not prop.homie_subscription:
                            prop.homie_subscription = self._subscribe_set(node, prop_name, prop)

            self._publish(f"{self.device_topic}/$nodes", ",".join(n.node_id for n in self.nodes))

            if self.current_state != DeviceState.READY and self._required_nodes_available():
                self._schedule_ready()

    def add_nodes(self, *nodes: Node) -> None:
        """Attach *nodes* and republish the structure once for the whole batch."""
        with self._lock:
            known = {n.node_id for n in self.nodes}
            for node in nodes:
                if node.attached:
                    raise ValueError(f"Node {node.node_id} is already attached")
                if node.node_id in known:
                    raise ValueError(f"Device {self.dev_id} already has a node {node.node_id}")
                known.add(node.node_id)

            for node in nodes:
                node.attach(self, on_change=self._on_property_change)
                self.nodes.append(node)
                for prop in node.all_properties().values():
                    if prop.value is not None:
                        self._publish(prop.topic, format_value(prop.value), no_retain=prop.no_retain)
            self.update_nodes()

    def resend_homie_structure(self) -> None:
        """Publish identity and structure again, e.g. after the broker applied our last will."""
        with self._lock:
            self.change_device_state(DeviceState.INIT)
            self._send_device_info()
            self.update_nodes()

    def stop(self) -> None:
        with self._lock:
            self._ready_generation += 1
            if self._ready_timer is not None:
                self._ready_timer.cancel()
                self._ready_timer = None
            self._stop_event.set()
            # a clean disconnect does not trigger the last will
            self._publish(f"{self.device_topic}/$state", DeviceState.LOST.value, log_level="info")
        if self._mqtt is not None:
            self._mqtt.stop()
        self.logger.info(f"Device {self.dev_id} stopped")

    # ------------------------------------------------------------------
    # Values & stats
    # ------------------------------------------------------------------
    def get_node_by_id(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.node_id == node_id), None)

    def update_last_seen(self) -> None:
        self.stats.last_seen = _utcnow()

    def send_node_property_values(self, node: Node) -> None:
        device = node.device
        device.update_last_seen()
        for prop in node.properties.values():
            device._update_stats(prop, prop.value)
        device._publish_values(node)

    def publish_stats(self, now: datetime | None = None) -> None:
        now = now or _utcnow()
        stats = self.stats
        stats.uptime = int((now - stats.first_seen).total_seconds())
        stats_topic = f"{self.device_topic}/$stats"
        self.logger.debug(f"Updating Stats for {self.dev_id}")

        self._publish(stats_topic, STATS_FIELDS)
        self._publish(f"{stats_topic}/interval", str(stats.interval))
        self._publish(f"{stats_topic}/uptime", str(stats.uptime), no_retain=True)
        self._publish(f"{stats_topic}/signal", format_value(stats.signal))
        self._publish(f"{stats_topic}/voltage", format_value(stats.voltage))
        self._publish(f"{stats_topic}/battery", format_value(stats.battery))
        self._publish(f"{stats_topic}/firstSeen", _iso(stats.first_seen))
        self._publish(f"{stats_topic}/lastSeen", _iso(stats.last_seen))

        if now - stats.last_seen > HEALTH_TIMEOUT:
            self.logger.warning(f"No update for device {self.dev_id} since {_iso(stats.last_seen)}")
            # lost is published only, current_state stays
            self._publish(f"{self.device_topic}/$state", DeviceState.LOST.value, log_level="info")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _publish(self, topic: str, message: str, log_level: str | None = None, no_retain: bool = False):
        self.messages.publish(
            OutboundMessage(topic=topic, message=message, log_level=log_level, no_retain=no_retain)
        )

    def _publish_values(self, node: Node) -> None:
        for prop in node.properties.values():
            if prop.value is not None:
                self._publish(prop.topic, format_value(prop.value), no_retain=prop.no_retain)

    def _send_device_info(self) -> None:
        self._publish(f"{self.device_topic}/$homie", HOMIE_VERSION)
        self._publish(f"{self.device_topic}/$name", self.name)
        self._publish(f"{self.device_topic}/$state", self.current_state.value, log_level="info")

    def _required_nodes_available(self) -> bool:
        return all(
            any(node.node_id.startswith(required) for node in self.nodes)
            for required in self.required_nodes
        )

    def _schedule_ready(self) -> None:
        # a newer structural change replaces the pending transition
        if self._ready_timer is not None:
            self._ready_timer.cancel()
        self._ready_generation += 1
        timer = self._timer_factory(
            self._ready_delay, functools.partial(self._become_ready, self._ready_generation)
        )
        timer.daemon = True
        self._ready_timer = timer
        timer.start()
        if not self.ready:
            self.ready = True
            self.logger.info(f"Device {self.dev_id} will become ready in {int(self._ready_delay * 1000)}ms")

    def _become_ready(self, generation: int) -> None:
        with self._lock:
            if generation != self._ready_generation:
                return
            self._ready_timer = None
            self.change_device_state(DeviceState.READY)

    def _start_stats_timer(self) -> None:
        if self._stats_thread is not None:
            return
        self._stats_thread = threading.Thread(
            target=self._stats_loop, name=f"HomieStats-{self.dev_id}", daemon=True
        )
        self._stats_thread.start()

    def _stats_loop(self) -> None:
        while True:
            try:
                self.publish_stats()
            except Exception as exc:
                self.logger.error(f"Publishing stats for {self.dev_id} failed: {exc}")
            if self._stop_event.wait(self.stats.interval):
                break

    def _on_property_change(self, prop: Property, value: Value) -> None:
        with self._lock:
            self.update_last_seen()
            self._update_stats(prop, value)

    def _update_stats(self, prop: Property, value: Value) -> None:
        if prop.stat is None:
            return
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.logger.debug(f"Ignoring non numeric {prop.stat.value} value {value!r}")
            return
        setattr(self.stats, prop.stat.value, value)

    def _subscribe_set(self, node: Node, prop_name: str, prop: Property) -> bool:
        if self._mqtt is None:
            return False
        topic = f"{prop.topic}/set"
        try:
            return bool(self._mqtt.subscribe(topic, self._make_set_handler(node.node_id, prop_name)))
        except Exception as exc:
            self.logger.warning(f"Could not subscribe to topic {topic}: {exc}")
            return False

    def _make_set_handler(self, node_id: str, prop_name: str):
        def _handler(topic: str, payload: str):
            self.logger.debug(f"→ SET {topic} = {payload}")
            if not self._on_set_cb:
                return
            try:
                self._on_set_cb(node_id, prop_name, payload)
            except Exception as exc:
                self.logger.error(f"on_set callback raised: {exc}")
        return _handler

    def _on_mqtt_connect(self) -> None:
        self.logger.info(f"Connected for device {self.dev_id}")
        with self._lock:
            first = not self._connected_once
            self._connected_once = True
        if first:
            self.messages.subscribe(self._send)
        # the replay window may have expired, and a reconnect has to replace the last will
        self.resend_homie_structure()
        for node in list(self.nodes):
            self._publish_values(node)

    def _send(self, msg: OutboundMessage) -> None:
        if msg.log_level == "info":
            self.logger.info(f"Sending to {msg.topic}: {msg.message} for {self.dev_id}")
        else:
            self.logger.debug(f"Sending to {msg.topic}: {msg.message} for {self.dev_id}")
        self._mqtt.publish(msg.topic, msg.message, qos=1, retain=not msg.no_retain)
