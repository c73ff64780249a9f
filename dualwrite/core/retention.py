from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from dualwrite.config import settings
from dualwrite.core.recorder import DiffRecorder
from dualwrite.logging_utils import get_logger
from dualwrite.utils.time import now_utc_str

logger = get_logger(__name__)


@dataclass
class RetentionStats:
    run_count: int = 0
    last_run_at: str | None = None
    last_deleted: dict[str, int] = field(default_factory=dict)
    total_deleted: int = 0
    last_error: str | None = None


class RetentionJob:
    """Background thread applying the diff retention policy every RETENTION_INTERVAL_SEC.

    A failed run is logged and retried on the next interval.
    """

    def __init__(self, recorder: DiffRecorder | None = None, interval_sec: float | None = None) -> None:
        self._stop = threading.Event()
        self._t: threading.Thread | None = None
        self.recorder = recorder or DiffRecorder()
        self.interval_sec = float(settings.RETENTION_INTERVAL_SEC if interval_sec is None else interval_sec)
        self.stats = RetentionStats()

    @property
    def running(self) -> bool:
        return bool(self._t and self._t.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="diff-retention", daemon=True)
        self._t.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._t is not None:
            self._t.join(timeout)

    def _run(self) -> None:
        interval = max(1.0, self.interval_sec)
        while not self._stop.is_set():
            t0 = time.time()
            self.run_once()
            sleep_for = max(0.0, interval - (time.time() - t0))
            # wait() returns early on stop()
            self._stop.wait(sleep_for)

    def run_once(self) -> dict[str, int] | None:
        self.stats.run_count += 1
        self.stats.last_run_at = now_utc_str()
        try:
            deleted = self.recorder.apply_retention_policy()
        except Exception as e:
            self.stats.last_error = repr(e)[:500]
            logger.exception("[DUAL-WRITE] retention run failed")
            return None
        self.stats.last_deleted = dict(deleted)
        self.stats.total_deleted += sum(deleted.values())
        self.stats.last_error = None
        return deleted
