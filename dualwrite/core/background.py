from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Coroutine

from dualwrite.config import settings
from dualwrite.logging_utils import get_logger
from dualwrite.utils.time import now_utc_str

logger = get_logger(__name__)


@dataclass
class BackgroundStats:
    spawned: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    dropped: int = 0
    cancelled: int = 0
    last_error: str | None = None
    last_error_at: str | None = None


class BackgroundTasks:
    """
    Supervisor for work that runs after the caller already has its answer
    (deferred comparisons, non-authoritative calls, compensations).

    - every task is wrapped with a hard lifetime (max_lifetime_sec)
    - at most max_pending tasks alive; beyond that new work is dropped and counted
    - exceptions are captured into stats and logged, never re-raised
    """

    def __init__(self, max_lifetime_sec: float | None = None, max_pending: int | None = None) -> None:
        self.max_lifetime_sec = float(settings.BACKGROUND_MAX_LIFETIME_SEC if max_lifetime_sec is None else max_lifetime_sec)
        self.max_pending = int(settings.BACKGROUND_MAX_PENDING if max_pending is None else max_pending)
        self._tasks: set[asyncio.Task] = set()
        self.stats = BackgroundStats()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "dual-write-bg") -> asyncio.Task | None:
        if len(self._tasks) >= self.max_pending:
            self.stats.dropped += 1
            logger.warning("[DUAL-WRITE] background queue full (%d), dropping %s", self.max_pending, name)
            coro.close()
            return None

        task = asyncio.get_running_loop().create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats.spawned += 1
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.max_lifetime_sec)
            self.stats.completed += 1
        except asyncio.TimeoutError:
            self.stats.timed_out += 1
            self._note_error(f"{name}: exceeded {self.max_lifetime_sec}s")
            logger.warning("[DUAL-WRITE] background task %s exceeded %.1fs, cancelled", name, self.max_lifetime_sec)
        except asyncio.CancelledError:
            self.stats.cancelled += 1
            raise
        except Exception as e:
            self.stats.failed += 1
            self._note_error(f"{name}: {e!r}")
            logger.exception("[DUAL-WRITE] background task %s failed", name)

    def _note_error(self, msg: str) -> None:
        self.stats.last_error = msg[:500]
        self.stats.last_error_at = now_utc_str()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for everything spawned so far (and anything they spawn). True if idle."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + float(timeout)
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
