"""
Live position feed.

Push-style holder of the most recent fix. Readers never wait for a value.
"""

import threading
from typing import Optional

from train_audit.app.schemas.telemetry import PositionFix


class PositionFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Optional[PositionFix] = None
        self._error: Optional[str] = None
    
    def push(self, fix: PositionFix) -> None:
        with self._lock:
            self._latest = fix
            self._error = None
    
    def push_error(self, message: str) -> None:
        """Record a feed error; the next tick consumes it."""
        with self._lock:
            self._error = message
    
    def latest(self) -> Optional[PositionFix]:
        with self._lock:
            return self._latest
    
    def take_error(self) -> Optional[str]:
        with self._lock:
            error, self._error = self._error, None
            return error
    
    def clear(self) -> None:
        with self._lock:
            self._latest = None
            self._error = None
