"""
Telemetry Record database model.

Durable, append-only breadcrumb store for recorded positions. A row is
visible to the sync engine while ``delivered`` is false.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from train_audit.app.db.session import Base


class TelemetryRecordRow(Base):
    """
    Telemetry Record model.
    
    ``seq`` gives insertion order; ``record_id`` is the time-based identifier
    shared with the sink for acknowledgement.
    """
    __tablename__ = "telemetry_records"
    
    seq = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(String(64), nullable=False, unique=True, index=True)
    
    # Observation
    captured_at = Column(DateTime(timezone=True), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)  # m/s as reported by the feed
    heading = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)  # meters
    synthetic = Column(Boolean, default=False, nullable=False)
    
    # Opaque event classification payload
    derived = Column(JSON, nullable=False, default=dict)
    
    # Delivery state
    delivered = Column(Boolean, default=False, nullable=False, index=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<TelemetryRecordRow(record_id={self.record_id}, delivered={self.delivered})>"
