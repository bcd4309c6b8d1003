"""
AgentApp — wires the engine together and keeps it alive.

  store → client → token manager → reconciler → scheduler → gap detector

The main thread only waits for a stop signal. Work happens on the heartbeat
thread and on the scheduler's timer threads; the Scheduler lock serializes
all of it.
"""

import signal
import threading

from .constants import AGENT_VERSION
from .config import log, safe_print
from .storage import open_default_store
from .api import AttendanceClient
from .token_manager import TokenManager
from .reconciler import SessionReconciler
from .scheduler import Scheduler, load_schedule
from .heartbeat import GapDetector
from .activity_log import ActivityLogger
from . import events


class AgentApp:
    """
    Owns one Scheduler and its Gap Detector.
      run()   — start everything, block until stop() / Ctrl+C / SIGTERM
      stop()  — cancel timers, stop the heartbeat, close HTTP connections

    Collaborators can be injected (tests); by default they are built from
    the normalized config dict.
    """

    def __init__(self, config, store=None, client=None, timer_factory=threading.Timer,
                 clock=None):
        self._config = config
        self._stop_event = threading.Event()

        self.store = store or open_default_store()
        self.client = client or AttendanceClient(
            config["apiBaseUrl"],
            token_url=config.get("tokenUrl"),
            client_id=config.get("clientId"),
        )
        self.emitter = events.EventEmitter()
        self.emitter.subscribe(events.log_event)
        self.activity_log = ActivityLogger(self.store)
        self.emitter.subscribe(self.activity_log)

        self.token_manager = TokenManager(self.client, self.store, self.emitter)
        schedule = load_schedule(self.store)
        self.reconciler = SessionReconciler(self.token_manager, self.client, schedule.tzinfo)
        self.scheduler = Scheduler(
            self.token_manager, self.reconciler, self.client, self.store,
            emitter=self.emitter, schedule=schedule, clock=clock,
            timer_factory=timer_factory,
        )
        self.detector = GapDetector(
            self._on_heartbeat,
            interval_sec=config["heartbeatIntervalSec"],
            threshold_sec=config["gapThresholdSec"],
        )

    # ─── Lifecycle ───────────────────────────────────────────

    def start(self):
        self._stop_event.clear()
        self.scheduler.start()
        self.detector.start()
        log.info(
            "v%s started (api=%s, heartbeat=%ds, gap threshold=%ds)",
            AGENT_VERSION, self._config["apiBaseUrl"],
            self.detector.interval_sec, self.detector.threshold_sec,
        )

    def run(self):
        """Start the agent and block until stopped. Call from main thread."""
        self._install_signal_handlers()
        self.start()
        safe_print("Service running. Press Ctrl+C to stop.\n")
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()

    def stop(self):
        self._stop_event.set()

    def shutdown(self):
        self.detector.stop()
        self.scheduler.stop()
        self.client.close()
        log.info("AgentApp shut down.")

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return

        def handle(signum, frame):
            log.info("Signal %d received — stopping", signum)
            self.stop()

        signal.signal(signal.SIGINT, handle)
        signal.signal(signal.SIGTERM, handle)

    def _on_heartbeat(self, gap_detected, gap_seconds):
        if gap_detected:
            self.client.reset()
        self.scheduler.on_heartbeat(gap_detected, gap_seconds)

    # ─── Manual overrides ────────────────────────────────────

    def manual_clock_in(self):
        return self.scheduler.manual_clock_in()

    def manual_clock_out(self, bypass_minimum=False):
        return self.scheduler.manual_clock_out(bypass_minimum)

    def can_clock_out(self):
        return self.scheduler.can_clock_out()

    def get_state(self):
        return self.scheduler.get_state()

    def reconcile(self):
        self.scheduler.reconcile("manual")

    def update_schedule(self, schedule):
        self.scheduler.update_schedule(schedule)
