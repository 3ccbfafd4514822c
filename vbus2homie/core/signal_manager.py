import signal
import threading


class SignalManager:
    """Runs the bridge shutdown once on SIGINT/SIGTERM and lets the main thread wait for it."""

    def __init__(self, shutdown_cb, logger):
        """
        :param shutdown_cb: callable that stops the bridge
        """
        self._shutdown_cb = shutdown_cb
        self._logger = logger
        self._shutting_down = threading.Event()
        self._stopped = threading.Event()

    def install(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._handle)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the shutdown callback has finished."""
        return self._stopped.wait(timeout)

    def request_shutdown(self):
        if self._shutting_down.is_set():
            self._logger.debug("Shutdown already in progress")
            return
        self._shutting_down.set()
        # run the shutdown outside of the signal handler context
        th = threading.Thread(target=self._shutdown, name="shutdown", daemon=True)
        th.start()

    def _handle(self, signum, _frame):
        signame = signal.Signals(signum).name
        self._logger.info("Got %s, starting graceful shutdown", signame)
        self.request_shutdown()

    def _shutdown(self):
        try:
            self._shutdown_cb()
        except Exception as exc:
            self._logger.error(f"Error during shutdown: {exc}")
        finally:
            self._stopped.set()
