"""
Recorder dependencies for FastAPI.
"""

from fastapi import Request

from train_audit.app.core.exceptions import RecorderNotReadyError
from train_audit.app.services.recorder import BackgroundRecorder


async def get_recorder(request: Request) -> BackgroundRecorder:
    """
    FastAPI dependency returning the host recorder built during startup.
    
    Raises:
        RecorderNotReadyError: If the lifespan has not started one
    """
    recorder = getattr(request.app.state, "recorder", None)
    if recorder is None or recorder.strategy is None:
        raise RecorderNotReadyError()
    return recorder
