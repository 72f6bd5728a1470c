from __future__ import annotations

"""
Periodic inactivity sweep.

Design intent:
- One store-side filtered query per sweep; no per-session timers and no
  dependency on whether anyone is connected.
- A sweep can run any number of times; an open Inactivity alert makes the
  session ineligible, so duplicates are impossible.
- A failed sweep is logged and the loop keeps running.
"""

import logging
import threading
from datetime import timedelta
from typing import List, Optional

from progresspath.internal_core.contracts import Alert
from progresspath.internal_core.errors import NotFoundError
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.notifier import Notifier

logger = logging.getLogger(__name__)


class InactivityWatchdog:
    def __init__(
        self,
        store: InMemorySessionStore,
        notifier: Notifier,
        *,
        threshold_sec: float = 600.0,
        interval_sec: float = 60.0,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._threshold = timedelta(seconds=threshold_sec)
        self._interval_sec = max(0.01, float(interval_sec))
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, stop_event: Optional[threading.Event] = None) -> List[Alert]:
        """Raise an Inactivity alert for every eligible silent session; returns the new alerts."""

        cutoff = self._store.now() - self._threshold
        raised: List[Alert] = []
        for session in self._store.list_silent_sessions(cutoff):
            if stop_event is not None and stop_event.is_set():
                logger.debug("sweep_cancelled raised=%s", len(raised))
                break
            try:
                alert = self._store.raise_alert(session.id, "Inactivity")
            except NotFoundError:
                continue
            if alert is None:
                logger.debug("sweep_skip session_id=%s reason=alert_open", session.id)
                continue
            self._notifier.alert_raised(alert, session.nickname)
            raised.append(alert)
        if raised:
            logger.info("sweep_complete raised=%s", len(raised))
        return raised

    def _run(self) -> None:
        logger.info(
            "watchdog_started interval_sec=%s threshold_sec=%s",
            self._interval_sec,
            self._threshold.total_seconds(),
        )
        while not self._stop_event.wait(self._interval_sec):
            try:
                self.sweep(self._stop_event)
            except Exception:
                logger.exception("sweep_failed")
        logger.info("watchdog_stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="inactivity-watchdog", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
