from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class OutboundMessage:
    topic: str
    message: str
    log_level: str | None = None
    no_retain: bool = False


Subscriber = Callable[[OutboundMessage], object]


class MessageChannel:
    """Ordered outbound queue with replay for late subscribers.

    Every published message is delivered to all current subscribers in publish
    order and kept in a bounded replay buffer (``buffer_size`` messages, at
    most ``window`` seconds old). A subscriber that attaches later first gets
    the buffered messages that are still inside the window, then everything
    published afterwards. This covers a transport that connects after the
    device has already started emitting state.

    Delivery and replay happen under one lock, so a message published while a
    subscriber is being replayed to waits until the replay is done.
    """

    def __init__(
        self,
        buffer_size: int = 1000,
        window: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ):
        self._buffer: deque[tuple[float, OutboundMessage]] = deque(maxlen=buffer_size)
        self._window = window
        self._clock = clock
        self._subscribers: list[Subscriber] = []
        self._lock = threading.RLock()
        self._logger = logger or logging.getLogger("MessageChannel")

    def publish(self, message: OutboundMessage) -> None:
        with self._lock:
            self._buffer.append((self._clock(), message))
            for subscriber in list(self._subscribers):
                self._deliver(subscriber, message)

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            now = self._clock()
            for stamp, message in list(self._buffer):
                if now - stamp <= self._window:
                    self._deliver(subscriber, message)
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

    def _deliver(self, subscriber: Subscriber, message: OutboundMessage) -> None:
        try:
            subscriber(message)
        except Exception as exc:
            self._logger.error(f"Subscriber failed for topic {message.topic}: {exc}")
