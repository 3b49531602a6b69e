"""
Recorder control API schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any

from train_audit.app.schemas.telemetry import DerivedFields, TelemetryRecord
from train_audit.app.schemas.sink import SyncResult


class StartRecordingRequest(BaseModel):
    """Schema for starting a recording session."""
    interval_ms: Optional[int] = Field(None, gt=0)
    derived: Optional[DerivedFields] = None


class SessionResponse(BaseModel):
    """Recording session after a start/stop command."""
    is_recording: bool
    interval_ms: int
    started_at: Optional[datetime]
    strategy: str


class UpdateConfigRequest(BaseModel):
    """Runtime changes to the recording configuration."""
    interval_ms: Optional[int] = Field(None, gt=0)
    sync_threshold: Optional[int] = Field(None, gt=0)


class ConfigResponse(BaseModel):
    is_recording: bool
    interval_ms: int
    sync_threshold: int
    strategy: str


class PositionErrorRequest(BaseModel):
    message: str = Field(..., min_length=1)


class RecorderStatusResponse(BaseModel):
    """Quick-glance recorder status."""
    is_recording: bool
    interval_ms: int
    started_at: Optional[datetime]
    strategy: str
    pending_records: int
    recent_records: List[TelemetryRecord]
    last_sync: Optional[SyncResult]


class StatusEventResponse(BaseModel):
    event: str
    payload: Dict[str, Any]
    at: datetime


class CollectorResponse(BaseModel):
    status: str
    acknowledged: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class CollectedPointResponse(BaseModel):
    record_id: str
    recorded_at: datetime
    latitude: float
    longitude: float
    speed_kmh: float
    trip_identifier: str
    received_at: datetime
    
    class Config:
        from_attributes = True
