"""
Sink wire schemas.

Rows travel in the collector's column naming; Python attributes use English
names with the wire names as aliases.
"""

from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, Field

from train_audit.app.schemas.telemetry import TelemetryRecord, utcnow

MS_TO_KMH = 3.6


class SinkRow(BaseModel):
    """One record in the shape the collector expects."""
    id: str
    timestamp: datetime = Field(..., alias="Timestamp")
    latitude: float = Field(..., alias="lat", ge=-90, le=90)
    longitude: float = Field(..., alias="lng", ge=-180, le=180)
    speed_kmh: float = Field(0, alias="velocidad")
    heading: float = Field(0, alias="direccion")
    accuracy_meters: int = Field(0, alias="precision")
    event_type: str = Field("EN_RUTA", alias="tipo_evento")
    stop_duration: float = Field(0, alias="duracion_parada")
    route_line: str = Field("NO_DETECTADA", alias="linea")
    deviation_meters: float = Field(0, alias="desvio_metros")
    direction: str = Field("IDA", alias="sentido")
    trip_identifier: str = Field("BACKGROUND", alias="identificador_viaje")
    
    class Config:
        populate_by_name = True
    
    @classmethod
    def from_record(cls, record: TelemetryRecord) -> "SinkRow":
        """Rename and default fields. Records without a position map to 0,0."""
        position = record.position
        derived = record.derived
        return cls(
            id=record.id,
            timestamp=record.captured_at,
            latitude=position.latitude if position else 0.0,
            longitude=position.longitude if position else 0.0,
            speed_kmh=(position.speed or 0) * MS_TO_KMH if position else 0,
            heading=(position.heading or 0) if position else 0,
            accuracy_meters=round(position.accuracy or 0) if position else 0,
            event_type=derived.event_type or "EN_RUTA",
            stop_duration=derived.stop_duration or 0,
            route_line=derived.route_line or "NO_DETECTADA",
            deviation_meters=derived.deviation_meters or 0,
            direction=derived.direction or "IDA",
            trip_identifier=derived.trip_id or "BACKGROUND",
        )


class SinkResponse(BaseModel):
    """Body returned by the collector."""
    status: str
    acknowledged: Optional[List[str]] = None
    rejected: Optional[List[str]] = None
    message: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome of one ``sync_once`` attempt."""
    status: Literal["noop", "success", "partial", "failed", "skipped"]
    submitted: int = 0
    acknowledged: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    finished_at: datetime = Field(default_factory=utcnow)
