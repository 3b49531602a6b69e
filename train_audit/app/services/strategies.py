"""
Execution Strategy Selector.

Three ways of keeping sampling and sync alive, probed once at startup in
preference order:

1. ``installable_worker`` - host timer samples, a SyncWorker owns sync
   (one-shot background sync + periodic sync registrations).
2. ``dedicated_worker`` - a SamplerWorker ticks in its own thread and posts
   records back; the host persists and syncs.
3. ``foreground_timer`` - everything on the host loop.

Every strategy exposes the same ``start_recording`` / ``stop_recording`` /
``trigger_sync`` contract so business logic never branches on the platform.
"""

import enum
import logging
import threading
from typing import TYPE_CHECKING, Callable, List, Optional

from pydantic import BaseModel

from train_audit.app.core.config import Settings
from train_audit.app.core.exceptions import CapabilityUnavailableError
from train_audit.app.schemas.sink import SyncResult
from train_audit.app.schemas.telemetry import DerivedFields, PositionFix, TelemetryRecord
from train_audit.app.services.sampler import Sampler, SamplerMode
from train_audit.app.services.status_reporter import StatusMessage
from train_audit.app.services.workers import Message, SamplerWorker, SyncWorker

if TYPE_CHECKING:
    from train_audit.app.services.recorder import BackgroundRecorder

logger = logging.getLogger("train_audit.strategy")


class ExecutionStrategy(str, enum.Enum):
    INSTALLABLE_WORKER = "installable_worker"
    DEDICATED_WORKER = "dedicated_worker"
    FOREGROUND_TIMER = "foreground_timer"


PREFERENCE_ORDER = [
    ExecutionStrategy.INSTALLABLE_WORKER,
    ExecutionStrategy.DEDICATED_WORKER,
    ExecutionStrategy.FOREGROUND_TIMER,
]


class HostCapabilities(BaseModel):
    """Result of probing the runtime."""
    threads: bool = False
    shared_store: bool = False
    sync_worker: bool = False
    background_sync: bool = False
    periodic_sync: bool = False
    dedicated_worker: bool = False


def _threads_available() -> bool:
    try:
        probe = threading.Thread(target=lambda: None, daemon=True)
        probe.start()
        probe.join(timeout=1)
    except RuntimeError:
        return False
    return True


def probe_capabilities(cfg: Settings) -> HostCapabilities:
    """
    Probe which background primitives this runtime offers.
    
    Worker threads must be startable; the sync worker additionally needs a
    store that another engine can open (not an in-memory database).
    """
    threads = _threads_available()
    shared_store = ":memory:" not in cfg.database_url
    return HostCapabilities(
        threads=threads,
        shared_store=shared_store,
        sync_worker=cfg.enable_sync_worker and threads and shared_store,
        background_sync=cfg.enable_background_sync,
        periodic_sync=cfg.enable_periodic_sync,
        dedicated_worker=cfg.enable_dedicated_worker and threads,
    )


def candidate_strategies(capabilities: HostCapabilities) -> List[ExecutionStrategy]:
    """Strategies usable with ``capabilities``, in preference order."""
    available = {
        ExecutionStrategy.INSTALLABLE_WORKER: capabilities.sync_worker,
        ExecutionStrategy.DEDICATED_WORKER: capabilities.dedicated_worker,
        ExecutionStrategy.FOREGROUND_TIMER: True,
    }
    candidates = []
    for strategy in PREFERENCE_ORDER:
        if available[strategy]:
            candidates.append(strategy)
        else:
            logger.warning(
                "Strategy unavailable, falling back",
                extra={"strategy": strategy.value, "capabilities": capabilities.model_dump()}
            )
    return candidates


def select_strategy(capabilities: HostCapabilities) -> ExecutionStrategy:
    return candidate_strategies(capabilities)[0]


class RecordingStrategy:
    """Common contract; the host recorder is passed by reference."""
    
    kind: ExecutionStrategy
    
    def __init__(self, recorder: "BackgroundRecorder"):
        self.recorder = recorder
    
    async def start(self) -> None:
        pass
    
    async def shutdown(self) -> None:
        pass
    
    async def start_recording(self, interval_ms: int, derived: DerivedFields) -> bool:
        raise NotImplementedError
    
    async def stop_recording(self) -> bool:
        raise NotImplementedError
    
    async def update_interval(self, interval_ms: int) -> bool:
        """Move an active recording onto a new interval."""
        raise NotImplementedError
    
    async def trigger_sync(self) -> Optional[SyncResult]:
        """Run or delegate one sync. Returns None when delegated to a worker."""
        return await self.recorder.sync_engine.sync_once()
    
    def on_position(self, fix: PositionFix) -> None:
        pass
    
    def on_position_error(self, message: str) -> None:
        pass
    
    async def handle_worker_message(self, message: Message) -> None:
        """Host-side handling of messages posted by a worker."""
        action = message.get("action")
        data = message.get("data") or {}
        if action == "pointRecorded":
            await self.recorder.queue.accept(TelemetryRecord.model_validate(data))
        elif action == "status":
            self.recorder.reporter.publish(StatusMessage.model_validate(data))
        elif action == "error":
            logger.warning("Worker reported an error", extra={"payload": data})
        else:
            logger.debug("Worker message", extra={"action": action})


class ForegroundTimerStrategy(RecordingStrategy):
    """Plain interval scheduling on the host loop."""
    
    kind = ExecutionStrategy.FOREGROUND_TIMER
    
    def __init__(self, recorder: "BackgroundRecorder"):
        super().__init__(recorder)
        self.sampler = Sampler(
            recorder.feed,
            recorder.queue.accept,
            recorder.reporter,
            mode=SamplerMode(recorder.settings.sampler_mode),
        )
    
    async def start_recording(self, interval_ms: int, derived: DerivedFields) -> bool:
        return self.sampler.start(interval_ms, derived)
    
    async def stop_recording(self) -> bool:
        return self.sampler.stop()
    
    async def update_interval(self, interval_ms: int) -> bool:
        return self.sampler.reschedule(interval_ms)
    
    async def shutdown(self) -> None:
        self.sampler.stop()


class InstallableWorkerStrategy(ForegroundTimerStrategy):
    """Host samples; a SyncWorker runs sync on background/periodic registrations."""
    
    kind = ExecutionStrategy.INSTALLABLE_WORKER
    
    def __init__(self, recorder: "BackgroundRecorder", sink_factory: Callable):
        super().__init__(recorder)
        self.worker = SyncWorker(
            self.handle_worker_message,
            database_url=recorder.settings.database_url,
            sink_factory=sink_factory,
            title=recorder.settings.notification_title,
        )
    
    async def start(self) -> None:
        await self.worker.start()
        cfg = self.recorder.settings
        caps = self.recorder.capabilities
        if caps.periodic_sync and not caps.background_sync:
            # Only one context runs sync_once against the store
            logger.info("Background sync not available, periodic sync left to host triggers")
        elif caps.periodic_sync:
            self.worker.post({
                "action": "periodicSync",
                "data": {"tag": cfg.periodic_sync_tag, "min_interval_ms": cfg.periodic_sync_min_interval_ms}
            })
        else:
            logger.info("Periodic sync not available, relying on host triggers")
    
    async def trigger_sync(self) -> Optional[SyncResult]:
        if not self.recorder.capabilities.background_sync:
            logger.debug("Background sync not available, syncing on the host")
            return await self.recorder.sync_engine.sync_once()
        self.worker.post({"action": "sync", "data": {"tag": self.recorder.settings.sync_tag}})
        return None
    
    async def shutdown(self) -> None:
        await super().shutdown()
        await self.worker.stop()


class DedicatedWorkerStrategy(RecordingStrategy):
    """Sampler ticks in a SamplerWorker; host persists and syncs."""
    
    kind = ExecutionStrategy.DEDICATED_WORKER
    
    def __init__(self, recorder: "BackgroundRecorder"):
        super().__init__(recorder)
        self.worker = SamplerWorker(self.handle_worker_message, mode=SamplerMode(recorder.settings.sampler_mode))
        self._recording = False
    
    async def start(self) -> None:
        await self.worker.start()
        latest = self.recorder.feed.latest()
        if latest is not None:
            self.on_position(latest)
    
    async def start_recording(self, interval_ms: int, derived: DerivedFields) -> bool:
        if self._recording:
            return False
        self._recording = True
        self.worker.post({
            "action": "startRecording",
            "data": {"interval_ms": interval_ms, "derived": derived.model_dump(mode="json")}
        })
        return True
    
    async def stop_recording(self) -> bool:
        if not self._recording:
            return False
        self._recording = False
        self.worker.post({"action": "stopRecording"})
        return True
    
    async def update_interval(self, interval_ms: int) -> bool:
        if not self._recording:
            return False
        self.worker.post({"action": "updateConfig", "data": {"interval_ms": interval_ms}})
        return True
    
    def on_position(self, fix: PositionFix) -> None:
        self.worker.post({"action": "position", "data": fix.model_dump(mode="json")})
    
    def on_position_error(self, message: str) -> None:
        self.worker.post({"action": "positionError", "data": {"message": message}})
    
    async def shutdown(self) -> None:
        self._recording = False
        await self.worker.stop()


def build_strategy(kind: ExecutionStrategy, recorder: "BackgroundRecorder", sink_factory: Callable) -> RecordingStrategy:
    if kind is ExecutionStrategy.INSTALLABLE_WORKER:
        return InstallableWorkerStrategy(recorder, sink_factory)
    if kind is ExecutionStrategy.DEDICATED_WORKER:
        return DedicatedWorkerStrategy(recorder)
    if kind is ExecutionStrategy.FOREGROUND_TIMER:
        return ForegroundTimerStrategy(recorder)
    raise CapabilityUnavailableError(str(kind))
