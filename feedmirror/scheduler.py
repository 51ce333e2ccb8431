from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from feedmirror.config_manager import ConfigManager
from feedmirror.models import SyncResult, serialize_datetime
from feedmirror.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60


class SyncScheduler:
    """Background thread that runs the sync once at startup and then on an interval."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self.next_run_at: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="feedmirror-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self.next_run_at = None

    def trigger_manual(self) -> None:
        self._wake_event.set()

    def interval_seconds(self) -> int:
        return max(MIN_INTERVAL_SECONDS, int(self.config_manager.load().sync.interval_seconds))

    def status(self) -> dict[str, object]:
        return {
            "running": self.is_running,
            "next_run_at": serialize_datetime(self.next_run_at),
            "last_status": self.last_result.status if self.last_result else None,
        }

    def run_cycle(self, trigger: str) -> SyncResult:
        result = self.sync_engine.run_once(trigger=trigger)
        self.last_result = result
        logger.info("Sync (%s) finished with status %s: %s", trigger, result.status, result.message)
        return result

    def _loop(self) -> None:
        self.run_cycle("startup")
        while not self._stop_event.is_set():
            interval = self.interval_seconds()
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
            woken = self._wake_event.wait(timeout=interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self.run_cycle("manual" if woken else "scheduled")
