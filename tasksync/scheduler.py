from __future__ import annotations

import logging
import threading
from typing import Optional

from tasksync.config_manager import ConfigManager
from tasksync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs sync cycles on one background thread.

    Manual and timed triggers go through the same loop, so two cycles never
    overlap.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tasksync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Sync scheduler stopped")

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        try:
            self.sync_engine.run_once(trigger=trigger)
        except Exception:
            logger.exception("Sync run (%s) raised unexpectedly", trigger)

    def _loop(self) -> None:
        config = self.config_manager.load()
        if config.sync.enable_auto_sync:
            self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self._run("manual")
            elif config.sync.enable_auto_sync:
                self._run("scheduled")
