"""
Sampler.

Produces one TelemetryRecord per tick while Active. In ``strict`` mode a tick
without a live fix emits nothing; ``synthetic`` mode fills the gap with random
coordinates around a fixed origin for environments that have no location feed.
"""

import asyncio
import enum
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from train_audit.app.schemas.telemetry import (
    DerivedFields, Position, TelemetryRecord, utcnow
)
from train_audit.app.services.position_feed import PositionFeed
from train_audit.app.services.status_reporter import StatusEvent, StatusReporter

logger = logging.getLogger("train_audit.sampler")

# Synthetic origin (Buenos Aires) and spread, in degrees
SYNTHETIC_ORIGIN = (-34.6037, -58.3816)
SYNTHETIC_SPREAD = 0.01


class SamplerMode(str, enum.Enum):
    STRICT = "strict"
    SYNTHETIC = "synthetic"


class SamplerState(str, enum.Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"


Emit = Callable[[TelemetryRecord], Awaitable[object]]


class Sampler:
    """
    Idle -> Active -> Idle tick source.
    
    Args:
        feed: Live position feed read on every tick
        emit: Coroutine receiving each produced record
        reporter: Status reporter of the owning context
        mode: Strict or synthetic handling of ticks without a fix
        rng: Random source for synthetic coordinates
    """
    
    def __init__(
        self,
        feed: PositionFeed,
        emit: Emit,
        reporter: StatusReporter,
        mode: SamplerMode = SamplerMode.STRICT,
        rng: Optional[random.Random] = None
    ):
        self.feed = feed
        self.mode = SamplerMode(mode)
        self.state = SamplerState.IDLE
        self.interval_ms: Optional[int] = None
        self.derived = DerivedFields()
        self._emit = emit
        self._reporter = reporter
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None
    
    @property
    def is_active(self) -> bool:
        return self.state is SamplerState.ACTIVE
    
    def start(self, interval_ms: int, derived: Optional[DerivedFields] = None) -> bool:
        """Schedule recurring ticks. No-op (returns False) unless Idle."""
        if self.state is not SamplerState.IDLE:
            return False
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        
        self.interval_ms = interval_ms
        self.derived = (derived or DerivedFields()).model_copy()
        if not self.derived.trip_id:
            self.derived.trip_id = f"BACKGROUND_{int(time.time() * 1000)}"
        self.state = SamplerState.ACTIVE
        self._task = asyncio.create_task(self._run(), name="sampler")
        logger.info("Sampler started", extra={"interval_ms": interval_ms, "mode": self.mode.value})
        return True
    
    def stop(self) -> bool:
        """Cancel the schedule. Effective before the next tick fires."""
        if self.state is not SamplerState.ACTIVE:
            return False
        self.state = SamplerState.IDLE
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.info("Sampler stopped")
        return True
    
    def reschedule(self, interval_ms: int) -> bool:
        """Restart the schedule on a new interval, keeping the derived fields."""
        if self.state is not SamplerState.ACTIVE:
            return False
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.stop()
        return self.start(interval_ms, self.derived)
    
    async def _run(self) -> None:
        while self.state is SamplerState.ACTIVE:
            await asyncio.sleep(self.interval_ms / 1000)
            if self.state is not SamplerState.ACTIVE:
                break
            try:
                await self.tick()
            except Exception as exc:
                logger.exception("Sampler tick failed")
                self._reporter.report(StatusEvent.ERROR, {"source": "sampler", "error": str(exc)})
    
    async def tick(self) -> Optional[TelemetryRecord]:
        """
        Produce at most one record.
        
        Returns:
            The emitted record, or None when the tick was suppressed
        """
        error = self.feed.take_error()
        if error:
            self._reporter.report(StatusEvent.ERROR, {"source": "position", "error": error})
            return None
        
        fix = self.feed.latest()
        if fix is not None:
            record = TelemetryRecord(
                captured_at=fix.captured_at,
                position=Position(**fix.model_dump(exclude={"captured_at"})),
                derived=self.derived.model_copy(),
            )
        elif self.mode is SamplerMode.SYNTHETIC:
            record = self._synthetic_record()
        else:
            logger.debug("Waiting for position fix")
            return None
        
        await self._emit(record)
        return record
    
    def _synthetic_record(self) -> TelemetryRecord:
        lat0, lng0 = SYNTHETIC_ORIGIN
        return TelemetryRecord(
            captured_at=utcnow(),
            position=Position(
                latitude=lat0 + self._rng.random() * SYNTHETIC_SPREAD,
                longitude=lng0 + self._rng.random() * SYNTHETIC_SPREAD,
                speed=self._rng.random() * 50 / 3.6,
                accuracy=10 + self._rng.random() * 20,
            ),
            derived=self.derived.model_copy(),
            synthetic=True,
        )
