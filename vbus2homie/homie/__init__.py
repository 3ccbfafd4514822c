from .homie_device import DeviceState, HomieDevice, HomieStats
from .homie_node import Node, NodeNotAttachedError, Property, PropertySpec, StatKind
from .message_channel import MessageChannel, OutboundMessage
