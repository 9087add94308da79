"""
Scan loop driving the synchronizer over all targets.

Targets are synced one after another in configured order. After a full
sweep the loop waits a fixed interval before the next one; the wait does
not count against any target's cadence.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone, tzinfo
from typing import Callable, List, Optional

from .retention import DiskFullError
from .synchronizer import STATUS_IDLE, STATUS_SKIPPED, SyncOutcome, Synchronizer
from .targets import TargetState


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60
RECENT_OUTCOMES = 100


class ScanLoop:
    """Sequential scan loop with a shutdown flag checked once per sweep."""

    def __init__(self, synchronizer: Synchronizer, states: List[TargetState],
                 interval_seconds: float = DEFAULT_INTERVAL, tz: Optional[tzinfo] = None,
                 clock: Optional[Callable[[], float]] = None):
        """
        Initialize scan loop.

        Args:
            synchronizer: Synchronizer for individual targets
            states: Initial target states, in configured order
            interval_seconds: Pause between two sweeps
            tz: Timezone used to bucket scan times, local time if None
            clock: Source of unix time, time.time if None
        """
        self.synchronizer = synchronizer
        self.states = list(states)
        self.interval_seconds = interval_seconds
        self.tz = tz
        self.clock = clock if clock is not None else time.time

        self.recent_outcomes = deque(maxlen=RECENT_OUTCOMES)
        self.last_sweep_at = None
        self.fatal_error = None
        self._stop_event = threading.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def scan_time(self) -> datetime:
        """
        Current time in the loop's timezone.

        Without a configured timezone the result is naive local time, so
        bucket starts resolve the UTC offset in force at the bucket start
        rather than the offset at scan time.
        """
        if self.tz is None:
            return datetime.fromtimestamp(self.clock())
        return datetime.fromtimestamp(self.clock(), timezone.utc).astimezone(self.tz)

    def sweep(self) -> List[SyncOutcome]:
        """
        Synchronize every target once.

        Returns:
            Outcomes in target order

        Raises:
            DiskFullError: Propagated from the synchronizer, aborts the sweep
        """
        scan_time = self.scan_time()
        self.last_sweep_at = scan_time
        outcomes = []

        for index, state in enumerate(self.states):
            try:
                next_state, outcome = self.synchronizer.synchronize(state, scan_time, now=self.clock())
            except DiskFullError as e:
                self.fatal_error = str(e)
                logger.critical(f"Stopping scan loop: {e}")
                raise

            self.states[index] = next_state
            outcomes.append(outcome)
            if outcome.status not in (STATUS_IDLE, STATUS_SKIPPED):
                self.recent_outcomes.append(outcome)

        return outcomes

    def run(self):
        """
        Sweep until stop() is called.

        Raises:
            DiskFullError: Stops the loop entirely
        """
        logger.info("Starting backup server.")
        self._running = True

        try:
            while not self._stop_event.is_set():
                self.sweep()
                self._stop_event.wait(self.interval_seconds)
        finally:
            self._running = False
            logger.info("Backup server stopped.")

    def stop(self):
        """Request shutdown; takes effect before the next sweep starts."""
        self._stop_event.set()
