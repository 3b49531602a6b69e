"""
Queue Manager.

Bridges Sampler output to the Record Store. Keeps a bounded in-memory view of
recent unsent records for quick-glance status (the store stays the source of
truth) and asks for a sync when the view crosses the threshold or on an
explicit "sync now". Never performs network I/O itself.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional

from train_audit.app.core.exceptions import StorageUnavailableError
from train_audit.app.schemas.telemetry import TelemetryRecord
from train_audit.app.services.record_store import RecordStore
from train_audit.app.services.status_reporter import StatusEvent, StatusReporter

logger = logging.getLogger("train_audit.queue")

SyncRequest = Callable[[], Awaitable[Any]]


class QueueManager:
    """
    Args:
        store: Durable record store of this context
        request_sync: Coroutine function that performs or delegates one sync
        reporter: Status reporter of this context
        max_queue_size: Capacity of the recent-records view (and retry buffer)
        sync_threshold: View size that triggers a sync request
        max_stored_records: Store bound enforced after each append (0 = none)
    """
    
    def __init__(
        self,
        store: RecordStore,
        request_sync: SyncRequest,
        reporter: StatusReporter,
        max_queue_size: int = 100,
        sync_threshold: int = 10,
        max_stored_records: int = 0
    ):
        self._store = store
        self._request_sync = request_sync
        self._reporter = reporter
        self.sync_threshold = sync_threshold
        self.max_stored_records = max_stored_records
        self.recent: Deque[TelemetryRecord] = deque(maxlen=max_queue_size)
        # Records whose append failed; retried ahead of the next record
        self._retry: Deque[TelemetryRecord] = deque(maxlen=max_queue_size)
        self._sync_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
    
    @property
    def sync_in_flight(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()
    
    async def accept(self, record: TelemetryRecord) -> bool:
        """
        Persist a record coming from the Sampler.
        
        Returns:
            True if the record (and any earlier retained ones) reached the store
        """
        async with self._lock:
            # A record leaves the retry buffer only once it is stored
            self._retry.append(record)
            
            while self._retry:
                item = self._retry[0]
                try:
                    await self._store.append(item)
                except StorageUnavailableError as exc:
                    logger.warning(
                        "Append failed, keeping records in memory",
                        extra={"retained": len(self._retry), "error": exc.message}
                    )
                    self._reporter.report(StatusEvent.ERROR, {"source": "store", "error": exc.message})
                    return False
                
                self._retry.popleft()
                self.recent.append(item)
                self._reporter.report(
                    StatusEvent.POINT_RECORDED,
                    item.model_dump(mode="json", include={"id", "captured_at", "position", "synthetic"})
                )
            
            if self.max_stored_records:
                try:
                    await self._store.evict_oldest(self.max_stored_records)
                except StorageUnavailableError as exc:
                    logger.warning("Eviction skipped", extra={"error": exc.message})
        
        if len(self.recent) >= self.sync_threshold:
            self.request_sync("threshold")
        return True
    
    def request_sync(self, reason: str = "manual") -> Optional[asyncio.Task]:
        """
        Ask for one sync. While a requested sync is still running no new one
        is started; the running task is returned instead.
        """
        if self.sync_in_flight:
            logger.debug("Sync already requested", extra={"reason": reason})
            return self._sync_task
        
        logger.debug("Requesting sync", extra={"reason": reason})
        self._sync_task = asyncio.create_task(self._request_sync(), name=f"sync-{reason}")
        self._sync_task.add_done_callback(self._sync_done)
        return self._sync_task
    
    def _sync_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync request failed", exc_info=exc)
            self._reporter.report(StatusEvent.ERROR, {"source": "sync", "error": str(exc)})
    
    def forget(self, ids: Iterable[str]) -> None:
        """Drop delivered records from the view."""
        delivered = set(ids)
        if not delivered:
            return
        kept = [record for record in self.recent if record.id not in delivered]
        self.recent.clear()
        self.recent.extend(kept)
    
    @property
    def retained(self) -> List[TelemetryRecord]:
        return list(self._retry)
    
    async def wait_for_sync(self) -> None:
        """Wait for the currently requested sync, if any."""
        if self._sync_task is not None:
            await asyncio.gather(self._sync_task, return_exceptions=True)
