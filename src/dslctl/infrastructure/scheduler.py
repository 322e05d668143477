"""Background periodic tasks (health sweep, session eviction).

Each task runs on its own daemon thread and sleeps on an Event, so
``stop()`` wakes it immediately. ``start()`` and ``stop()`` are safe to
call repeatedly and from any thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *action* every *interval* seconds until stopped."""

    def __init__(self, name: str, interval: float, action: Callable[[], object]) -> None:
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)
        self.name = name
        self.interval = interval
        self._action = action
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()
        logger.debug("Started %s (every %.1fs)", self.name, self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        # Join outside the lock; the loop never takes it.
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            logger.debug("Stopped %s", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._action()
            except Exception:
                logger.exception("%s failed", self.name)
            self.runs += 1
