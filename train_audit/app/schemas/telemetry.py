"""
Telemetry schemas.

In-memory shape of recorded observations and of the recording session.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    """Time-based record id (microseconds since epoch). Not guaranteed unique."""
    return str(time.time_ns() // 1000)


class Position(BaseModel):
    """Coordinates of one fix. Speed is m/s, accuracy in meters."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = Field(None, ge=0)


class PositionFix(Position):
    """Update delivered by the live position feed."""
    captured_at: datetime = Field(default_factory=utcnow)


class DerivedFields(BaseModel):
    """Event classification payload, passed through untouched."""
    event_type: str = "EN_RUTA"
    stop_duration: float = 0
    route_line: str = "NO_DETECTADA"
    deviation_meters: float = 0
    direction: str = "IDA"
    trip_id: Optional[str] = None


class TelemetryRecord(BaseModel):
    """One timestamped observation."""
    id: str = Field(default_factory=new_record_id)
    captured_at: datetime
    position: Optional[Position] = None
    derived: DerivedFields = Field(default_factory=DerivedFields)
    synthetic: bool = False
    delivered: bool = False


class RecordingSession(BaseModel):
    """
    Persisted recording state.
    
    ``active`` + ``interval_ms`` are enough to resume after a restart.
    """
    active: bool = False
    interval_ms: int = 10000
    started_at: Optional[datetime] = None
    derived: DerivedFields = Field(default_factory=DerivedFields)
