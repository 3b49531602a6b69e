"""
Sync Engine.

One attempt per call: read undelivered records, submit them as a single
batch, mark exactly the acknowledged ids as delivered. Retries are driven from
outside (threshold, periodic and reconnection triggers), never looped here.
"""

import logging
from typing import Optional

from train_audit.app.core.exceptions import NetworkFailureError, StorageUnavailableError
from train_audit.app.schemas.sink import SyncResult
from train_audit.app.services.record_store import RecordStore
from train_audit.app.services.status_reporter import StatusEvent, StatusReporter

logger = logging.getLogger("train_audit.sync")


class SyncEngine:
    """
    Args:
        store: Record store of the owning context
        sink: Object with ``async submit(records) -> Optional[set[str]]``
        reporter: Status reporter of the owning context
    """
    
    def __init__(self, store: RecordStore, sink, reporter: StatusReporter):
        self._store = store
        self._sink = sink
        self._reporter = reporter
        self._in_flight = False
        self.last_result: Optional[SyncResult] = None
    
    @property
    def in_flight(self) -> bool:
        return self._in_flight
    
    async def sync_once(self) -> SyncResult:
        """
        Run one sync attempt. A call made while another is in flight returns
        a ``skipped`` result without touching the store or the network.
        """
        if self._in_flight:
            logger.debug("Sync already in flight")
            return SyncResult(status="skipped")
        
        self._in_flight = True
        try:
            result = await self._attempt()
        except Exception as exc:
            logger.exception("Unexpected sync failure")
            result = SyncResult(status="failed", error=str(exc))
        finally:
            self._in_flight = False
        
        self.last_result = result
        self._publish(result)
        return result
    
    async def _attempt(self) -> SyncResult:
        # 1. Snapshot undelivered records
        try:
            batch = await self._store.list_undelivered()
        except StorageUnavailableError as exc:
            return SyncResult(status="failed", error=exc.message)
        
        if not batch:
            logger.debug("No pending records")
            return SyncResult(status="noop")
        
        # 2-3. Submit as one request
        logger.info("Syncing records", extra={"count": len(batch)})
        try:
            acknowledged_ids = await self._sink.submit(batch)
        except NetworkFailureError as exc:
            logger.warning("Sync failed", extra={"count": len(batch), "error": exc.message})
            return SyncResult(status="failed", submitted=len(batch), error=exc.message)
        
        # 4. Reconcile only what the sink acknowledged
        batch_ids = [record.id for record in batch]
        if acknowledged_ids is None:
            acknowledged = batch_ids
        else:
            acknowledged = [record_id for record_id in batch_ids if record_id in acknowledged_ids]
        
        try:
            await self._store.mark_delivered(acknowledged)
        except StorageUnavailableError as exc:
            # The sink has the rows; they will be sent again next time
            return SyncResult(status="failed", submitted=len(batch), error=exc.message)
        
        status = "success" if len(acknowledged) == len(batch) else "partial"
        return SyncResult(status=status, submitted=len(batch), acknowledged=acknowledged)
    
    def _publish(self, result: SyncResult) -> None:
        if result.status == "skipped":
            return
        if result.status == "failed":
            self._reporter.report(StatusEvent.ERROR, {"source": "sync", "error": result.error})
        notification = None
        if result.acknowledged:
            notification = f"{len(result.acknowledged)} puntos sincronizados"
        self._reporter.report(
            StatusEvent.SYNC_RESULT,
            result.model_dump(mode="json"),
            notification=notification
        )
