import logging
import threading
from typing import Any, Callable


class TrailingThrottle:
    """Applies at most one item per *window* seconds, always the latest one.

    The first submitted item opens a window; items submitted while the window
    is open replace the pending one. When the window closes the most recent
    item is handed to *callback*. Nothing is carried over into the next window.
    """

    def __init__(
        self,
        window: float,
        callback: Callable[[Any], Any],
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        logger: logging.Logger | None = None,
    ):
        self._window = window
        self._callback = callback
        self._timer_factory = timer_factory
        self._logger = logger or logging.getLogger("TrailingThrottle")
        self._lock = threading.Lock()
        self._timer = None
        self._latest = None
        self._dropped = 0

    def submit(self, item: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._dropped += 1
            self._latest = item
            if self._timer is None:
                self._timer = self._timer_factory(self._window, self._flush)
                self._timer.daemon = True
                self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._latest = None

    def _flush(self) -> None:
        with self._lock:
            item, self._latest = self._latest, None
            dropped, self._dropped = self._dropped, 0
            self._timer = None
        if item is None:
            return
        if dropped:
            self._logger.debug(f"Throttle skipped {dropped} batch(es)")
        try:
            self._callback(item)
        except Exception as exc:
            self._logger.error(f"Throttled callback failed: {exc}")
