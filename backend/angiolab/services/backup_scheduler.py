"""Backup Scheduler — fixed-interval asyncio timer driving automatic backups.

Invariants:
    - At most one timer task per scheduler; start() and stop() are idempotent
    - stop() cancels the task and waits for it, so no tick runs after stop() returns
    - One failed tick never ends the loop

Design Decisions:
    - First tick after one full interval: startup already has a fresh database state
"""

import asyncio
import logging

from angiolab.services.backup_coordinator import BackupCoordinator

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Runs create_auto_backup() every `interval_seconds`."""

    def __init__(self, coordinator: BackupCoordinator, interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="auto-backup")
        logger.info(f"Auto-backup scheduled every {self._interval:g}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-backup stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._coordinator.create_auto_backup()
            except Exception as e:
                logger.error(f"Auto-backup tick failed: {e}", exc_info=True)
