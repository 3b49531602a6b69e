"""
Recorder settings table.

Small key/value table holding the persisted recording session.
"""

from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from train_audit.app.db.session import Base


class RecorderSetting(Base):
    __tablename__ = "recorder_settings"
    
    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<RecorderSetting(key='{self.key}')>"
