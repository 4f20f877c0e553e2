"""Session keep-alive while a file is being processed."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .logging_utils import log_warning


logger = logging.getLogger(__name__)


class Heartbeat:
    """Calls ``beat`` every ``interval_seconds`` on a daemon thread.

    ``start``/``stop`` are idempotent: starting an armed heartbeat or stopping
    a disarmed one does nothing. A failing beat is logged and the timer keeps
    running.
    """

    def __init__(self, beat: Callable[[], None], interval_seconds: float = 240.0, enabled: bool = True) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.beat = beat
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.beats = 0
        self.starts = 0
        self.stops = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="sheetload-heartbeat", daemon=True)
        self._thread.start()
        self.starts += 1
        logger.debug("Heartbeat armed (every %.0fs)", self.interval_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self.interval_seconds + 1)
        self._thread = None
        self.stops += 1
        logger.debug("Heartbeat disarmed after %d beats", self.beats)

    def tick(self) -> None:
        try:
            self.beat()
            self.beats += 1
        except Exception as exc:  # logged, never raised
            log_warning(logger, f"Keep-alive failed: {exc}")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.tick()
