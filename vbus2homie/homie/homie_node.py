"""Homie nodes and their properties.

A :class:`Node` is built with declarative :class:`PropertySpec` descriptors and
does not publish anything on its own. Once a device attaches it, every
descriptor is wrapped into a live :class:`Property` whose value assignments go
straight to the device's outbound channel.
"""
from __future__ import annotations

import enum
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict

from vbus2homie.homie.message_channel import OutboundMessage

if TYPE_CHECKING:
    from vbus2homie.homie.homie_device import HomieDevice


DATATYPES = ("float", "string", "enum", "boolean")

Value = int | float | str | bool | None


class NodeNotAttachedError(RuntimeError):
    """Raised when a node (or one of its properties) is used before a device owns it."""


class StatKind(enum.Enum):
    """Device stats a property value is mirrored into."""

    BATTERY = "battery"
    SIGNAL = "signal"
    VOLTAGE = "voltage"


@dataclass(frozen=True)
class PropertySpec:
    datatype: str
    value: Value = None
    format: str | None = None
    settable: bool = False
    no_retain: bool = False
    command_topic: str | None = None
    stat: StatKind | None = None

    def __post_init__(self):
        if self.datatype not in DATATYPES:
            raise ValueError(
                f"Unsupported datatype '{self.datatype}', expected one of {', '.join(DATATYPES)}"
            )


def format_value(value: Value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Property:
    def __init__(
        self,
        name: str,
        spec: PropertySpec,
        node: Node,
        on_change: Callable[[Property, Value], Any] | None = None,
    ):
        self.name = name
        self._node = node
        self._on_change = on_change
        self.datatype = spec.datatype
        self.format = spec.format
        self.settable = spec.settable
        self.no_retain = spec.no_retain
        self.command_topic = spec.command_topic
        self.stat = spec.stat
        self.homie_subscription = False
        self.topic = f"{node.topic}/{name}"
        self._value: Value = spec.value

    @property
    def node(self) -> Node:
        return self._node

    @property
    def value(self) -> Value:
        return self._value

    @value.setter
    def value(self, value: Value) -> None:
        self.set_value(value)

    def set_value(self, value: Value) -> None:
        """Store *value* and publish it. Every call publishes, even for an unchanged value."""
        device = self._node.device
        device.logger.debug(f"Updating value of property {self._node.node_id}/{self.name} to {value}")
        self._value = value
        device.messages.publish(
            OutboundMessage(topic=self.topic, message=format_value(value), no_retain=self.no_retain)
        )
        if self._on_change:
            self._on_change(self, value)

    def mark_settable(self) -> None:
        """Flag the property settable and subscribe to ``<topic>/set`` once.

        ``$settable`` is published with the next structure publish, which also
        retries a subscription that failed here.
        """
        self.settable = True
        if self.homie_subscription or not self._node.attached:
            return
        device = self._node.device
        self.homie_subscription = device._subscribe_set(self._node, self.name, self)
        if not self.homie_subscription:
            device.logger.warning(f"Subscription to {self.topic}/set failed, retrying on next structure publish")

    def __repr__(self):
        return f"Property({self.topic!r}, datatype={self.datatype!r}, value={self._value!r})"


class Node:
    def __init__(
        self,
        node_id: str,
        name: str | None = None,
        properties: Dict[str, PropertySpec] | None = None,
        custom_properties: Dict[str, PropertySpec] | None = None,
    ):
        self.node_id = node_id
        self.name = name or node_id
        self.properties: Dict[str, PropertySpec | Property] = dict(properties or {})
        self.custom_properties: Dict[str, PropertySpec | Property] = dict(custom_properties or {})
        self.topic: str | None = None
        self._device_ref: weakref.ReferenceType | None = None

    @property
    def attached(self) -> bool:
        return self._device_ref is not None and self._device_ref() is not None

    @property
    def device(self) -> HomieDevice:
        device = self._device_ref() if self._device_ref is not None else None
        if device is None:
            raise NodeNotAttachedError(f"Node {self.node_id} is not attached to a device")
        return device

    def attach(self, device: HomieDevice, on_change: Callable[[Property, Value], Any] | None = None) -> None:
        """Bind the node to *device*, fix its topic and turn descriptors into live properties."""
        if self._device_ref is not None:
            raise ValueError(f"Node {self.node_id} is already attached")
        self._device_ref = weakref.ref(device)
        self.topic = f"{device.device_topic}/{self.node_id}"
        self.properties = self._wrap(self.properties, on_change)
        self.custom_properties = self._wrap(self.custom_properties, on_change)

    def all_properties(self) -> Dict[str, Property]:
        """Custom and regular properties together; a regular property wins on a name clash."""
        return {**self.custom_properties, **self.properties}

    def _wrap(self, specs, on_change):
        wrapped: Dict[str, Property] = {}
        for prop_name, spec in specs.items():
            wrapped[prop_name] = Property(prop_name, spec, self, on_change=on_change)
        return wrapped

    def __repr__(self):
        return f"Node({self.node_id!r}, properties={list(self.all_properties())})"
