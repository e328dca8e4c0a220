from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..errors import PersistenceError
from ..detection.heuristics import MessageFrequencyTracker
from ..interfaces import DetectionEventRepository
from ..observability import ActionType, LogLevel, observability

log = logging.getLogger("drasil.retention")


class RetentionTask:
    """Deletes detection events older than ``retention_days`` on a fixed interval.

    Also drops idle members from the message frequency tracker.
    """

    def __init__(
        self,
        detections: DetectionEventRepository,
        retention_days: int = 30,
        interval_seconds: int = 21600,
        tracker: Optional[MessageFrequencyTracker] = None,
    ) -> None:
        self._detections = detections
        self._tracker = tracker
        self.retention_days = retention_days
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="drasil-retention")
        log.info("Retention started (days=%s every=%ss)", self.retention_days, self.interval)

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        log.info("Retention stopped")

    async def run_once(self) -> int:
        deleted = await self._detections.delete_detection_events_older_than(self.retention_days)
        pruned = self._tracker.prune() if self._tracker is not None else 0
        observability.log_structured(
            level=LogLevel.INFO,
            action=ActionType.RETENTION,
            message=f"Deleted {deleted} detection events older than {self.retention_days} days",
            details={"deleted": deleted, "retention_days": self.retention_days, "pruned_members": pruned},
            success=True,
        )
        return deleted

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except PersistenceError:
                log.exception("Retention pass failed; retrying next interval")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
