from __future__ import annotations

import logging
import threading
from typing import Optional

from schoolcal.config_manager import ConfigManager
from schoolcal.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="schoolcal-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        if self.sync_engine.is_running():
            logger.info("Sync cycle (%s) skipped: a run is already in progress", trigger)
            return
        try:
            result = self.sync_engine.run_once(trigger=trigger)
        except Exception:
            # The loop must survive a broken cycle; the next interval retries.
            logger.exception("Sync cycle (%s) crashed", trigger)
            return
        log = logger.info if result.status == "success" else logger.warning
        log("Sync cycle (%s) %s in %d ms: %s", trigger, result.status, result.duration_ms, result.message)

    def _loop(self) -> None:
        self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")
