
import logging
import threading
from typing import Any, Callable
from urllib.parse import urlparse

import paho.mqtt.client as mqtt


_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}


def parse_broker_url(broker_url: str) -> tuple[str, int, bool]:
    """Split ``mqtt://host:port`` into ``(host, port, tls)``."""
    parsed = urlparse(broker_url if "://" in broker_url else f"mqtt://{broker_url}")
    scheme = parsed.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported broker URL scheme '{parsed.scheme}' in {broker_url}")
    if not parsed.hostname:
        raise ValueError(f"Broker URL {broker_url} has no host")
    port = parsed.port or _DEFAULT_PORTS[scheme]
    return parsed.hostname, port, scheme in ("mqtts", "ssl")


class MqttModule:
    """Wrapper around *paho-mqtt* with Homie-friendly defaults.

    **Highlights**
    --------------
    * Connects asynchronously; paho keeps reconnecting in its network thread.
    * QoS 1 + retain=True by default for publishes.
    * Configurable Last-Will (usually ``homie/…/$state`` = ``lost``).
    * Dynamic handler registration even after the connection is up; handler
      topics are re-subscribed on every reconnect.
    * Connect listeners so owners can react to (re)connects.
    * Transport errors are logged, never raised to the caller.
    """

    def __init__(
        self,
        broker_url: str,
        client_id: str,
        logger: logging.Logger,
        username: str | None = None,
        password: str | None = None,
        *,
        keepalive: int = 60,
        reconnect_delay: int = 2,
        # Homie additions
        lwt_topic: str | None = None,
        lwt_payload: str = "lost",
        lwt_qos: int = 1,
        lwt_retain: bool = True,
        # Logging
        paho_debug: bool = False,
    ):
        self._logger = logger
        self._BROKER_URL = broker_url
        self._BROKER_HOST, self._BROKER_PORT, self._TLS = parse_broker_url(broker_url)
        self._KEEPALIVE = keepalive

        # ------------------------------------------------------------------
        # Paho logger configuration
        # ------------------------------------------------------------------
        paho_logger = logger.getChild("paho")
        paho_logger.setLevel(logging.DEBUG if paho_debug else logging.WARNING)
        if not paho_debug:
            paho_logger.propagate = False

        # ------------------------------------------------------------------
        # Client
        # ------------------------------------------------------------------
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, protocol=mqtt.MQTTv311
        )
        self._client.enable_logger(paho_logger)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=reconnect_delay, max_delay=reconnect_delay)

        if username:
            self._client.username_pw_set(username, password)
        if self._TLS:
            self._client.tls_set()
        if lwt_topic:
            self._client.will_set(lwt_topic, lwt_payload, qos=lwt_qos, retain=lwt_retain)

        self._topic_handlers: dict[str, Callable[[str, str], Any]] = {}
        self._connect_listeners: list[Callable[[], Any]] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        """Start the network loop; the connection is established in the background."""
        self._logger.info(f"Connecting to MQTT broker {self._BROKER_URL}")
        self._client.connect_async(self._BROKER_HOST, self._BROKER_PORT, keepalive=self._KEEPALIVE)
        self._client.loop_start()

    def stop(self) -> None:
        self._client.disconnect()
        self._client.loop_stop()
        self._logger.info("MQTT loop stopped.")

    def is_connected(self) -> bool:
        return self._client.is_connected()

    def add_connect_listener(self, listener: Callable[[], Any]) -> None:
        """*listener* is called (without arguments) after every successful connect."""
        with self._lock:
            self._connect_listeners.append(listener)

    def publish(
        self,
        topic: str,
        payload: str | bytes,
        qos: int = 1,
        retain: bool = True,
    ) -> bool:
        """Publish with Homie defaults (qos1+retain). Returns False on error."""
        p = payload if isinstance(payload, (bytes, bytearray)) else str(payload)
        try:
            info = self._client.publish(topic, p, qos=qos, retain=retain)
        except Exception as exc:
            self._logger.error(f"An error has occurred while sending a message to topic {topic}: {exc}")
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error(
                f"An error has occurred while sending a message to topic {topic}: {mqtt.error_string(info.rc)}"
            )
            return False
        return True

    def subscribe(self, topic: str, handler: Callable[[str, str], Any], qos: int = 1) -> bool:
        """Register *handler* for *topic* and subscribe right away.

        The handler stays registered even when the subscribe call fails, so it is
        re-subscribed on the next connect. The return value tells whether the
        broker subscription was issued successfully now.
        """
        with self._lock:
            self._topic_handlers[topic] = handler
        return self._subscribe_topic(topic, qos)

    # ------------------------------------------------------------------ #
    # Internals                                                          #
    # ------------------------------------------------------------------ #
    def _subscribe_topic(self, topic: str, qos: int = 1) -> bool:
        try:
            res, _ = self._client.subscribe(topic, qos=qos)
        except Exception as exc:
            self._logger.error(f"Exception subscribing to {topic}: {exc}")
            return False
        if res == mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug(f"Subscribed to {topic}")
            return True
        self._logger.warning(f"Could not subscribe to topic {topic}: {mqtt.error_string(res)}")
        return False

    # ------------------------------------------------------------------ #
    # Callbacks                                                          #
    # ------------------------------------------------------------------ #
    def _on_connect(self, client, userdata, flags, reason, properties=None):
        if reason != 0:
            self._logger.error(f"MQTT connect failed rc={reason}")
            return
        self._logger.info("MQTT CONNECTED")
        with self._lock:
            topics = list(self._topic_handlers)
            listeners = list(self._connect_listeners)
        for t in topics:
            self._subscribe_topic(t)
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                self._logger.error(f"Connect listener error: {exc}")

    def _on_disconnect(self, client, userdata, flags, reason, properties=None):
        self._logger.warning(f"MQTT disconnected, reason={reason}")

    def _on_message(self, client, userdata, msg):
        handled = False
        with self._lock:
            handlers = list(self._topic_handlers.items())
        for sub, cb in handlers:
            if mqtt.topic_matches_sub(sub, msg.topic):
                handled = True
                try:
                    cb(msg.topic, msg.payload.decode())
                except Exception as exc:
                    self._logger.error(f"Handler error for {msg.topic}: {exc}")
        if not handled:
            self._logger.debug(f"Unhandled topic {msg.topic}")
