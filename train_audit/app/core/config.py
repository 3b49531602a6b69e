"""
Configuration settings for the Train Audit Recorder.

This module handles application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings."""
    
    # Application
    app_name: str = "Train Audit Recorder"
    api_version: str = "v1"
    debug: bool = False
    log_level: str = "INFO"
    
    # Local durable store
    database_url: str = "sqlite+aiosqlite:///./train_audit.db"
    db_echo: bool = False
    
    # Remote sink (collector)
    sink_url: str = "http://127.0.0.1:8000/v1/collector/exec"
    sink_action: str = "saveData"
    sink_timeout_seconds: float = 15.0
    sink_failure_threshold: int = 5
    sink_reset_timeout_seconds: int = 60
    
    # Recording
    record_interval_ms: int = 10000
    sampler_mode: str = "strict"  # strict | synthetic
    max_queue_size: int = 100
    sync_threshold: int = 10
    sync_interval_ms: int = 30000
    periodic_sync_min_interval_ms: int = 3600000
    max_stored_records: int = 1000  # 0 disables eviction
    auto_resume: bool = True
    
    # Execution strategy capabilities
    enable_sync_worker: bool = True
    enable_background_sync: bool = True
    enable_periodic_sync: bool = True
    enable_dedicated_worker: bool = True
    
    # Notifications
    notification_title: str = "Auditoría Ferroviaria"
    sync_tag: str = "gps-queue"
    periodic_sync_tag: str = "periodic-gps-sync"
    default_trip_id: Optional[str] = None
    
    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
