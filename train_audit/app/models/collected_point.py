"""
Collected Point model for the reference collector.

Rows received by ``/v1/collector/exec``, kept in the sink's own column shape.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime
from sqlalchemy.sql import func
from train_audit.app.db.session import Base


class CollectedPoint(Base):
    """
    Collected Point.
    One row per acknowledged record; ``record_id`` is unique so a re-delivered
    batch is absorbed instead of duplicated.
    """
    __tablename__ = "collected_points"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    record_id = Column(String(64), nullable=False, unique=True, index=True)
    
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed_kmh = Column(Float, nullable=False, default=0)
    heading = Column(Float, nullable=False, default=0)
    accuracy_meters = Column(Integer, nullable=False, default=0)
    
    event_type = Column(String(50), nullable=False)
    stop_duration = Column(Float, nullable=False, default=0)
    route_line = Column(String(100), nullable=False)
    deviation_meters = Column(Float, nullable=False, default=0)
    direction = Column(String(20), nullable=False)
    trip_identifier = Column(String(100), nullable=False, index=True)
    
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<CollectedPoint(record_id={self.record_id}, lat={self.latitude}, lng={self.longitude})>"
