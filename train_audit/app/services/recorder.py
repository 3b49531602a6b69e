"""
Background recorder.

One explicitly constructed recorder per host context. It owns the store,
position feed, status reporter, queue manager and sync engine, selects the
execution strategy at startup, and persists the recording session so an
unplanned restart resumes recording automatically.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from train_audit.app.core.config import Settings, settings
from train_audit.app.core.exceptions import CapabilityUnavailableError, StorageUnavailableError
from train_audit.app.db.session import create_engine, create_session_factory, create_tables
from train_audit.app.schemas.sink import SyncResult
from train_audit.app.schemas.telemetry import DerivedFields, PositionFix, RecordingSession, utcnow
from train_audit.app.services.position_feed import PositionFeed
from train_audit.app.services.queue_manager import QueueManager
from train_audit.app.services.record_store import RecordStore
from train_audit.app.services.sink_client import HttpSink
from train_audit.app.services.status_reporter import StatusEvent, StatusMessage, StatusReporter
from train_audit.app.services.strategies import (
    HostCapabilities, RecordingStrategy, build_strategy, candidate_strategies, probe_capabilities
)
from train_audit.app.services.sync_engine import SyncEngine

logger = logging.getLogger("train_audit.recorder")


class BackgroundRecorder:
    """
    Host-context recorder.
    
    Args:
        cfg: Settings; defaults to the process settings
        engine: Async engine for the host store; created from ``cfg`` if omitted
        sink_factory: Builds a sink client; called once here and once inside
            a sync worker, if one is started
        capabilities: Skip probing and use these capabilities
        reporter: Status reporter; created if omitted
    """
    
    def __init__(
        self,
        cfg: Settings = settings,
        engine: Optional[AsyncEngine] = None,
        sink_factory: Optional[Callable[[], Any]] = None,
        capabilities: Optional[HostCapabilities] = None,
        reporter: Optional[StatusReporter] = None
    ):
        self.settings = cfg
        self._owns_engine = engine is None
        self.engine = engine or create_engine(cfg.database_url)
        self.store = RecordStore(create_session_factory(self.engine))
        self.feed = PositionFeed()
        self.reporter = reporter or StatusReporter(cfg.notification_title)
        self._sink_factory = sink_factory or (lambda: HttpSink.from_settings(cfg))
        self.sink = self._sink_factory()
        self.sync_engine = SyncEngine(self.store, self.sink, self.reporter)
        self.queue = QueueManager(
            self.store,
            self._trigger_sync,
            self.reporter,
            max_queue_size=cfg.max_queue_size,
            sync_threshold=cfg.sync_threshold,
            max_stored_records=cfg.max_stored_records,
        )
        self.capabilities = capabilities
        self.strategy: Optional[RecordingStrategy] = None
        self.session = RecordingSession(interval_ms=cfg.record_interval_ms)
        self.last_sync: Optional[SyncResult] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self.reporter.subscribe(self._on_status)
    
    @property
    def is_recording(self) -> bool:
        return self.session.active
    
    # Lifecycle
    
    async def start(self) -> None:
        """Create tables, pick a strategy, start host triggers, resume a session."""
        try:
            await create_tables(self.engine)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Could not initialise the local store", extra={"error": str(exc)})
            self.reporter.report(StatusEvent.ERROR, {"source": "store", "error": str(exc)})
        
        if self.capabilities is None:
            self.capabilities = probe_capabilities(self.settings)
        
        for kind in candidate_strategies(self.capabilities):
            strategy = build_strategy(kind, self, self._sink_factory)
            try:
                await strategy.start()
            except CapabilityUnavailableError as exc:
                logger.warning("Strategy failed to start, falling back", extra={"strategy": kind.value, "error": exc.message})
                continue
            self.strategy = strategy
            break
        logger.info("Execution strategy selected", extra={"strategy": self.strategy.kind.value})
        
        if self.settings.sync_interval_ms > 0:
            self._periodic_task = asyncio.create_task(self._periodic_sync_loop(), name="periodic-sync")
        
        if self.settings.auto_resume:
            await self.restore_session()
    
    async def shutdown(self) -> None:
        """Stop triggers and workers. The persisted session is left untouched."""
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            await asyncio.gather(self._periodic_task, return_exceptions=True)
            self._periodic_task = None
        if self.strategy is not None:
            await self.strategy.shutdown()
        await self.queue.wait_for_sync()
        await self.sink.aclose()
        if self._owns_engine:
            await self.engine.dispose()
    
    async def restore_session(self) -> bool:
        """Resume recording if the persisted session was active."""
        try:
            persisted = await self.store.load_session()
        except StorageUnavailableError as exc:
            self.reporter.report(StatusEvent.ERROR, {"source": "store", "error": exc.message})
            return False
        if not persisted.active:
            return False
        logger.info("Restoring previous recording", extra={"interval_ms": persisted.interval_ms})
        await self.start_recording(persisted.interval_ms, persisted.derived, started_at=persisted.started_at)
        return True
    
    # Commands
    
    async def start_recording(
        self,
        interval_ms: Optional[int] = None,
        derived: Optional[DerivedFields] = None,
        started_at: Optional[datetime] = None
    ) -> RecordingSession:
        if self.session.active:
            return self.session
        
        interval = interval_ms or self.session.interval_ms or self.settings.record_interval_ms
        if interval <= 0:
            raise ValueError("interval_ms must be positive")
        derived = (derived or DerivedFields(trip_id=self.settings.default_trip_id)).model_copy()
        if not derived.trip_id:
            derived.trip_id = f"BACKGROUND_{int(time.time() * 1000)}"
        
        await self.strategy.start_recording(interval, derived)
        self.session = RecordingSession(
            active=True,
            interval_ms=interval,
            started_at=started_at or utcnow(),
            derived=derived,
        )
        try:
            await self.store.save_session(self.session)
        except StorageUnavailableError as exc:
            self.reporter.report(StatusEvent.ERROR, {"source": "store", "error": exc.message})
        
        self.reporter.report(
            StatusEvent.STARTED,
            {"interval_ms": interval, "strategy": self.strategy.kind.value},
            notification="Grabación en background iniciada"
        )
        return self.session
    
    async def stop_recording(self) -> RecordingSession:
        """Stop sampling, clear the persisted flag and fire a final sync."""
        if not self.session.active:
            return self.session
        
        await self.strategy.stop_recording()
        self.session = RecordingSession(active=False, interval_ms=self.session.interval_ms)
        try:
            await self.store.clear_session()
        except StorageUnavailableError as exc:
            self.reporter.report(StatusEvent.ERROR, {"source": "store", "error": exc.message})
        
        self.queue.request_sync("stop")
        self.reporter.report(
            StatusEvent.STOPPED,
            {"strategy": self.strategy.kind.value},
            notification="Grabación en background detenida"
        )
        return self.session
    
    async def update_config(
        self,
        interval_ms: Optional[int] = None,
        sync_threshold: Optional[int] = None
    ) -> RecordingSession:
        """
        Change the sampling interval and/or sync threshold at runtime.
        
        An active recording keeps running on the new interval; the interval is
        persisted with the session so a resume or the next start uses it.
        """
        if interval_ms is not None and interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if sync_threshold is not None and sync_threshold <= 0:
            raise ValueError("sync_threshold must be positive")
        
        if sync_threshold is not None:
            self.queue.sync_threshold = sync_threshold
        
        if interval_ms is not None and interval_ms != self.session.interval_ms:
            if self.session.active:
                await self.strategy.update_interval(interval_ms)
            self.session = self.session.model_copy(update={"interval_ms": interval_ms})
            try:
                await self.store.save_session(self.session)
            except StorageUnavailableError as exc:
                self.reporter.report(StatusEvent.ERROR, {"source": "store", "error": exc.message})
        
        logger.info(
            "Recorder config updated",
            extra={"interval_ms": self.session.interval_ms, "sync_threshold": self.queue.sync_threshold}
        )
        return self.session
    
    async def sync_now(self, reason: str = "manual") -> Optional[SyncResult]:
        """
        Explicit "sync now" (foreground, reconnection, user request).
        
        Returns:
            The sync result, or None when the sync was handed to a worker
        """
        task = self.queue.request_sync(reason)
        return await task
    
    def push_position(self, fix: PositionFix) -> None:
        self.feed.push(fix)
        if self.strategy is not None:
            self.strategy.on_position(fix)
    
    def push_position_error(self, message: str) -> None:
        self.feed.push_error(message)
        if self.strategy is not None:
            self.strategy.on_position_error(message)
    
    async def status(self) -> Dict[str, Any]:
        return {
            "is_recording": self.session.active,
            "interval_ms": self.session.interval_ms,
            "started_at": self.session.started_at,
            "strategy": self.strategy.kind.value if self.strategy else "none",
            "pending_records": await self.store.count_undelivered(),
            "recent_records": list(self.queue.recent),
            "last_sync": self.last_sync,
        }
    
    # Internals
    
    async def _trigger_sync(self) -> Optional[SyncResult]:
        if self.strategy is None:
            return await self.sync_engine.sync_once()
        return await self.strategy.trigger_sync()
    
    async def _periodic_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_interval_ms / 1000)
            try:
                pending = await self.store.count_undelivered()
            except StorageUnavailableError as exc:
                logger.warning("Periodic sync skipped", extra={"error": exc.message})
                continue
            if pending:
                self.queue.request_sync("periodic")
    
    def _on_status(self, message: StatusMessage) -> None:
        if message.event is StatusEvent.SYNC_RESULT:
            self.last_sync = SyncResult.model_validate(message.payload)
            self.queue.forget(self.last_sync.acknowledged)
