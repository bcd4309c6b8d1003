"""
Gap Detector — heartbeat loop that notices when the machine was asleep.

Each tick compares wall-clock time with the previous tick. A gap larger than
the threshold means the host was suspended (timers may have been missed), so
the tick is reported with gap_detected=True and the Scheduler reconciles.
"""

import threading
import time

from .config import log
from .constants import HEARTBEAT_INTERVAL_SEC, GAP_THRESHOLD_FACTOR


class GapDetector:
    def __init__(self, on_tick, interval_sec=HEARTBEAT_INTERVAL_SEC, threshold_sec=None,
                 clock=time.time):
        self._on_tick = on_tick
        self.interval_sec = interval_sec
        self.threshold_sec = threshold_sec or interval_sec * GAP_THRESHOLD_FACTOR
        self._clock = clock
        self.last_heartbeat_at = None
        self._stop_event = threading.Event()
        self._thread = None

    def tick(self):
        """
        One heartbeat. Returns True when a gap was detected.
        last_heartbeat_at is updated whatever on_tick does.
        """
        now = self._clock()
        gap = 0.0 if self.last_heartbeat_at is None else now - self.last_heartbeat_at
        gap_detected = gap > self.threshold_sec
        if gap_detected:
            log.warning("Heartbeat gap %.0fs (> %.0fs) — host was probably suspended",
                        gap, self.threshold_sec)
        try:
            self._on_tick(gap_detected, gap)
        except Exception as e:
            log.error("Heartbeat tick error: %s", e, exc_info=True)
        finally:
            self.last_heartbeat_at = self._clock()
        return gap_detected

    def _run(self):
        log.info("Heartbeat loop started (interval=%ds, gap threshold=%ds)",
                 self.interval_sec, self.threshold_sec)
        while not self._stop_event.wait(self.interval_sec):
            self.tick()
        log.info("Heartbeat loop stopped")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.last_heartbeat_at = self._clock()
        self._thread = threading.Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()

    def stop(self, timeout=5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()
