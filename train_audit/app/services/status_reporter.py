"""
Notification / Status Reporter.

Surfaces recording state and sync results to whatever UI layer subscribed.
Start/stop and sync outcomes are user-visible notifications; per-tick events
(recorded points, transient errors) reach subscribers and the log only.
"""

import enum
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from train_audit.app.schemas.telemetry import utcnow

logger = logging.getLogger("train_audit.status")


class StatusEvent(str, enum.Enum):
    STARTED = "started"
    STOPPED = "stopped"
    POINT_RECORDED = "pointRecorded"
    SYNC_RESULT = "syncResult"
    ERROR = "error"


class StatusMessage(BaseModel):
    event: StatusEvent
    payload: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)
    notification: Optional[str] = None  # body of a user-visible notification


Subscriber = Callable[[StatusMessage], None]
Notifier = Callable[[str, str], None]


class StatusReporter:
    """
    Fan-out of status messages for one execution context.
    
    Args:
        title: Notification title
        history: How many recent messages to keep for polling clients
    """
    
    def __init__(self, title: str = "Auditoría Ferroviaria", history: int = 50):
        self.title = title
        self._subscribers: List[Subscriber] = []
        self._notifiers: List[Notifier] = []
        self.history: Deque[StatusMessage] = deque(maxlen=history)
        self.notifications: Deque[StatusMessage] = deque(maxlen=history)
    
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every message; returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)
    
    def add_notifier(self, callback: Notifier) -> None:
        """Register a ``(title, body)`` callback for user-visible notifications."""
        self._notifiers.append(callback)
    
    def report(
        self,
        event: StatusEvent,
        payload: Optional[Dict[str, Any]] = None,
        notification: Optional[str] = None
    ) -> StatusMessage:
        message = StatusMessage(event=event, payload=payload or {}, notification=notification)
        self.publish(message)
        return message
    
    def publish(self, message: StatusMessage) -> None:
        """Deliver an already-built message (e.g. one forwarded from a worker)."""
        if message.event is StatusEvent.ERROR:
            logger.warning("Recorder error", extra={"payload": message.payload})
        elif message.event is StatusEvent.POINT_RECORDED:
            logger.debug("Point recorded", extra={"payload": message.payload})
        else:
            logger.info("Recorder %s", message.event.value, extra={"payload": message.payload})
        
        self.history.append(message)
        for callback in list(self._subscribers):
            try:
                callback(message)
            except Exception:
                logger.exception("Status subscriber failed")
        
        if message.notification:
            self.notifications.append(message)
            for notify in list(self._notifiers):
                try:
                    notify(self.title, message.notification)
                except Exception:
                    logger.exception("Notifier failed")
    
    def recent(self, limit: int = 50) -> List[StatusMessage]:
        return list(self.history)[-limit:]
