"""
Worker execution contexts.

A worker owns a daemon thread with its own asyncio loop and exchanges
``{"action": ..., "data": ...}`` messages with the host loop. Workers never
touch host objects; anything they need arrives as a message or is rebuilt on
their own side (engine, store, sink).

- ``SamplerWorker``: dedicated computation worker running the Sampler; new
  records travel back to the host, which persists and syncs them.
- ``SyncWorker``: installable worker that only runs ``sync_once`` against the
  durable store, on one-shot ("background sync") and periodic registrations.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from train_audit.app.core.exceptions import CapabilityUnavailableError
from train_audit.app.db.session import create_engine, create_session_factory
from train_audit.app.schemas.telemetry import DerivedFields, PositionFix
from train_audit.app.services.position_feed import PositionFeed
from train_audit.app.services.record_store import RecordStore
from train_audit.app.services.sampler import Sampler, SamplerMode
from train_audit.app.services.status_reporter import StatusReporter
from train_audit.app.services.sync_engine import SyncEngine

logger = logging.getLogger("train_audit.workers")

Message = Dict[str, Any]
HostHandler = Callable[[Message], Awaitable[None]]

STARTUP_TIMEOUT = 10.0


class WorkerThread:
    """
    Base class for a message-driven worker.
    
    ``start`` and ``stop`` are called from the host loop; ``setup``,
    ``handle`` and ``teardown`` run inside the worker loop.
    """
    
    name = "worker"
    
    def __init__(self, on_message: HostHandler):
        self._on_message = on_message
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._host_loop: Optional[asyncio.AbstractEventLoop] = None
        self._host_inbox: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
    
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
    
    async def start(self) -> None:
        """
        Start the worker thread and wait until it is ready.
        
        Raises:
            CapabilityUnavailableError: If the thread could not be started
        """
        self._host_loop = asyncio.get_running_loop()
        self._host_inbox = asyncio.Queue()
        self._pump = asyncio.create_task(self._pump_host_inbox(), name=f"{self.name}-pump")
        
        try:
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        except RuntimeError as exc:
            self._pump.cancel()
            raise CapabilityUnavailableError(self.name) from exc
        
        ready = await asyncio.to_thread(self._ready.wait, STARTUP_TIMEOUT)
        if not ready or self._startup_error is not None:
            self._pump.cancel()
            logger.error("Worker failed to start", extra={"worker": self.name, "error": str(self._startup_error)})
            raise CapabilityUnavailableError(self.name)
        logger.info("Worker started", extra={"worker": self.name})
    
    async def stop(self) -> None:
        if self._loop is not None and self.running:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, None)
            await asyncio.to_thread(self._thread.join, STARTUP_TIMEOUT)
        if self._pump is not None:
            # Let already-delivered messages reach the host before stopping
            await self._host_inbox.join()
            self._pump.cancel()
            self._pump = None
        logger.info("Worker stopped", extra={"worker": self.name})
    
    def post(self, message: Message) -> None:
        """Send a message to the worker (host side)."""
        if self._loop is None or not self.running:
            logger.warning("Worker not running, message dropped", extra={"worker": self.name, "action": message.get("action")})
            return
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, message)
    
    def post_to_host(self, message: Message) -> None:
        """Send a message to the host (worker side)."""
        try:
            self._host_loop.call_soon_threadsafe(self._host_inbox.put_nowait, message)
        except RuntimeError:
            logger.debug("Host loop closed, message dropped", extra={"action": message.get("action")})
    
    async def _pump_host_inbox(self) -> None:
        while True:
            message = await self._host_inbox.get()
            try:
                await self._on_message(message)
            except Exception:
                logger.exception("Host failed to handle worker message", extra={"action": message.get("action")})
            finally:
                self._host_inbox.task_done()
    
    def _run(self) -> None:
        asyncio.run(self._main())
    
    async def _main(self) -> None:
        self._inbox = asyncio.Queue()
        try:
            await self.setup()
        except Exception as exc:
            self._startup_error = exc
            self._ready.set()
            await self.teardown()
            return
        self._loop = asyncio.get_running_loop()
        self._ready.set()
        
        try:
            while True:
                message = await self._inbox.get()
                if message is None:
                    break
                try:
                    await self.handle(message)
                except Exception as exc:
                    logger.exception("Worker failed to handle message", extra={"worker": self.name})
                    self.post_to_host({"action": "error", "data": {"source": self.name, "error": str(exc)}})
        finally:
            await self.teardown()
    
    def forward_status(self, reporter: StatusReporter) -> None:
        """Relay every message of a worker-side reporter to the host."""
        reporter.subscribe(
            lambda message: self.post_to_host({"action": "status", "data": message.model_dump(mode="json")})
        )
    
    async def setup(self) -> None:
        pass
    
    async def handle(self, message: Message) -> None:
        raise NotImplementedError
    
    async def teardown(self) -> None:
        pass


class SamplerWorker(WorkerThread):
    """Dedicated worker running Sampler ticks away from the host loop."""
    
    name = "sampler-worker"
    
    def __init__(self, on_message: HostHandler, mode: SamplerMode = SamplerMode.STRICT):
        super().__init__(on_message)
        self.mode = SamplerMode(mode)
        self.sampler: Optional[Sampler] = None
    
    async def setup(self) -> None:
        reporter = StatusReporter()
        self.forward_status(reporter)
        self.sampler = Sampler(PositionFeed(), self._emit, reporter, mode=self.mode)
    
    async def _emit(self, record) -> None:
        self.post_to_host({"action": "pointRecorded", "data": record.model_dump(mode="json")})
    
    async def handle(self, message: Message) -> None:
        action = message.get("action")
        data = message.get("data") or {}
        
        if action == "startRecording":
            derived = DerivedFields.model_validate(data["derived"]) if data.get("derived") else None
            if self.sampler.start(int(data["interval_ms"]), derived):
                self.post_to_host({"action": "recordingStarted", "data": {"interval_ms": data["interval_ms"]}})
        elif action == "stopRecording":
            if self.sampler.stop():
                self.post_to_host({"action": "recordingStopped", "data": {}})
        elif action == "updateConfig":
            if data.get("interval_ms") and self.sampler.reschedule(int(data["interval_ms"])):
                self.post_to_host({"action": "configUpdated", "data": {"interval_ms": data["interval_ms"]}})
        elif action == "position":
            self.sampler.feed.push(PositionFix.model_validate(data))
        elif action == "positionError":
            self.sampler.feed.push_error(data.get("message", "position error"))
        else:
            logger.warning("Unknown worker action", extra={"worker": self.name, "action": action})
    
    async def teardown(self) -> None:
        if self.sampler is not None:
            self.sampler.stop()


class SyncWorker(WorkerThread):
    """
    Installable worker: syncs the durable store on demand.
    
    Args:
        on_message: Host-side handler for messages from the worker
        database_url: Store location; the worker opens its own engine on it
        sink_factory: Builds the sink client inside the worker loop
        title: Notification title for the worker's reporter
    """
    
    name = "sync-worker"
    
    def __init__(self, on_message: HostHandler, database_url: str, sink_factory: Callable[[], Any], title: str = ""):
        super().__init__(on_message)
        self.database_url = database_url
        self._sink_factory = sink_factory
        self._title = title
        self._engine = None
        self._sink = None
        self.engine: Optional[SyncEngine] = None
        self._one_shot: Dict[str, asyncio.Task] = {}
        self._periodic: Dict[str, asyncio.Task] = {}
    
    async def setup(self) -> None:
        self._engine = create_engine(self.database_url)
        store = RecordStore(create_session_factory(self._engine))
        self._sink = self._sink_factory()
        reporter = StatusReporter(self._title)
        self.forward_status(reporter)
        self.engine = SyncEngine(store, self._sink, reporter)
    
    async def handle(self, message: Message) -> None:
        action = message.get("action")
        data = message.get("data") or {}
        tag = data.get("tag", "gps-queue")
        
        if action == "sync":
            self.register_sync(tag)
        elif action == "periodicSync":
            self.register_periodic(tag, int(data["min_interval_ms"]))
        elif action == "unregisterPeriodic":
            task = self._periodic.pop(tag, None)
            if task is not None:
                task.cancel()
        else:
            logger.warning("Unknown worker action", extra={"worker": self.name, "action": action})
    
    def register_sync(self, tag: str) -> None:
        """One-shot registration; repeated registrations of a pending tag coalesce."""
        pending = self._one_shot.get(tag)
        if pending is not None and not pending.done():
            return
        self._one_shot[tag] = asyncio.create_task(self.engine.sync_once(), name=f"sync-{tag}")
    
    def register_periodic(self, tag: str, min_interval_ms: int) -> None:
        existing = self._periodic.pop(tag, None)
        if existing is not None:
            existing.cancel()
        self._periodic[tag] = asyncio.create_task(self._periodic_loop(tag, min_interval_ms), name=f"periodic-{tag}")
        logger.info("Periodic sync registered", extra={"tag": tag, "min_interval_ms": min_interval_ms})
    
    async def _periodic_loop(self, tag: str, min_interval_ms: int) -> None:
        while True:
            await asyncio.sleep(min_interval_ms / 1000)
            logger.debug("Periodic sync fired", extra={"tag": tag})
            await self.engine.sync_once()
    
    async def teardown(self) -> None:
        for task in list(self._periodic.values()) + list(self._one_shot.values()):
            task.cancel()
        await asyncio.gather(*self._periodic.values(), *self._one_shot.values(), return_exceptions=True)
        if self._sink is not None:
            await self._sink.aclose()
        if self._engine is not None:
            await self._engine.dispose()
