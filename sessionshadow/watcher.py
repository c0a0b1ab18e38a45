"""
Capture Watcher - Background polling of the capture log
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CaptureWatcher:
    """
    Calls ``on_tick`` every ``interval_seconds`` in a background thread.

    The manager passes a tick that polls the capture log and runs the
    periodic auto-save check. The wait between ticks is interruptible, so
    ``stop()`` returns promptly; a tick in progress finishes its work under
    the manager's lock before the thread exits.
    """

    def __init__(
        self,
        on_tick: Callable[[], None],
        interval_seconds: float = 1.0,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        """
        Initialize the watcher.

        Args:
            on_tick: Work done on every tick
            interval_seconds: Wait between ticks
            on_error: Called with any exception a tick raises
        """
        self.on_tick = on_tick
        self.interval = interval_seconds
        self.on_error = on_error

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_count = 0

    def start(self):
        """Start polling in a background thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="shadow-capture", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        """Stop polling and wait for the thread to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _run_loop(self):
        """Main polling loop."""
        while not self._stop_event.wait(self.interval):
            self.tick_now()

    def tick_now(self):
        """Run one tick immediately."""
        self._tick_count += 1
        try:
            self.on_tick()
        except Exception as e:
            logger.exception("Capture tick failed")
            if self.on_error:
                self.on_error(e)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def count(self) -> int:
        return self._tick_count

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called; returns True if stopped."""
        return self._stop_event.wait(timeout)
