import asyncio
import logging
from typing import Optional

from efiling.ledger.interfaces import LocksStore
from efiling.shared.clock import Clock, utc_now
from efiling.shared.logging import get_logger, log_event

from .manager import is_expired

logger = get_logger("efiling.locking.reaper")


class LockReaper:
    """Deletes expired locks system-wide. Deletes are etag-conditional so a
    renewal or takeover that lands mid-sweep is left alone."""

    def __init__(self, store: LocksStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for lock in self._store.list_locks():
            if not is_expired(lock, now):
                continue
            if self._store.delete_lock(lock.resource_id, lock.etag or ""):
                removed += 1
                log_event(
                    logger,
                    "reaper.removed",
                    resource_id=lock.resource_id,
                    holder_id=lock.holder_id,
                    expires_at=lock.expires_at,
                )
        log_event(logger, "reaper.swept", removed=removed)
        return removed

    async def run(self, shutdown_event: asyncio.Event, interval_seconds: float) -> None:
        while not shutdown_event.is_set():
            await asyncio.to_thread(self.sweep_safely)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
        log_event(logger, "reaper.stopped")

    def sweep_safely(self) -> Optional[int]:
        try:
            return self.sweep()
        except Exception as exc:
            log_event(logger, "reaper.sweep_failed", level=logging.ERROR, error=str(exc))
            return None
