"""
Recorder Control API Endpoints.

Host-side wiring for the recorder: start/stop commands, live position
updates, "sync now" triggers and status polling.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query

from train_audit.app.core.dependencies import get_recorder
from train_audit.app.core.exceptions import PositionUnavailableError
from train_audit.app.schemas.recorder import (
    StartRecordingRequest, SessionResponse, PositionErrorRequest, UpdateConfigRequest, ConfigResponse,
    RecorderStatusResponse, StatusEventResponse
)
from train_audit.app.schemas.sink import SyncResult
from train_audit.app.schemas.telemetry import PositionFix
from train_audit.app.services.recorder import BackgroundRecorder

router = APIRouter(prefix="/recorder", tags=["Recorder"])

LIFECYCLE_EVENTS = ("foreground", "online")


def _session_response(recorder: BackgroundRecorder) -> SessionResponse:
    return SessionResponse(
        is_recording=recorder.session.active,
        interval_ms=recorder.session.interval_ms,
        started_at=recorder.session.started_at,
        strategy=recorder.strategy.kind.value,
    )


@router.post("/start", response_model=SessionResponse)
async def start_recording(
    request: Optional[StartRecordingRequest] = None,
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """
    Start recording.
    
    No-op if a session is already active. The session is persisted so a
    restart resumes it.
    """
    request = request or StartRecordingRequest()
    await recorder.start_recording(request.interval_ms, request.derived)
    return _session_response(recorder)


@router.post("/stop", response_model=SessionResponse)
async def stop_recording(recorder: BackgroundRecorder = Depends(get_recorder)):
    """
    Stop recording.
    
    Clears the persisted flag and fires a best-effort final sync.
    """
    await recorder.stop_recording()
    return _session_response(recorder)


@router.post("/config", response_model=ConfigResponse)
async def update_config(
    request: UpdateConfigRequest,
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """
    Update the interval and/or sync threshold without stopping.
    
    An active recording continues on the new interval, and the persisted
    session keeps it for a resume.
    """
    session = await recorder.update_config(request.interval_ms, request.sync_threshold)
    return ConfigResponse(
        is_recording=session.active,
        interval_ms=session.interval_ms,
        sync_threshold=recorder.queue.sync_threshold,
        strategy=recorder.strategy.kind.value,
    )


@router.post("/sync", response_model=Optional[SyncResult])
async def sync_now(recorder: BackgroundRecorder = Depends(get_recorder)):
    """
    Sync now.
    
    Returns the attempt's result, or null when the sync was delegated to the
    sync worker.
    """
    return await recorder.sync_now("manual")


@router.post("/lifecycle/{event}", response_model=Optional[SyncResult])
async def lifecycle_event(
    event: str = Path(..., description="foreground | online"),
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """Host lifecycle signal (app foregrounded, connectivity restored)."""
    if event not in LIFECYCLE_EVENTS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown lifecycle event: {event}"
        )
    return await recorder.sync_now(event)


@router.post("/position", status_code=status.HTTP_202_ACCEPTED)
async def push_position(
    fix: PositionFix,
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """Push a live position fix. The sampler reads the latest one on each tick."""
    recorder.push_position(fix)
    return {"accepted": True, "captured_at": fix.captured_at}


@router.get("/position", response_model=PositionFix)
async def get_position(recorder: BackgroundRecorder = Depends(get_recorder)):
    """Latest live fix the sampler would read on its next tick."""
    fix = recorder.feed.latest()
    if fix is None:
        raise PositionUnavailableError()
    return fix


@router.post("/position-error", status_code=status.HTTP_202_ACCEPTED)
async def push_position_error(
    body: PositionErrorRequest,
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """Report a position feed error. The next tick is suppressed."""
    recorder.push_position_error(body.message)
    return {"accepted": True}


@router.get("/status", response_model=RecorderStatusResponse)
async def get_status(recorder: BackgroundRecorder = Depends(get_recorder)):
    """Quick-glance status: session, strategy, pending count and last sync."""
    return await recorder.status()


@router.get("/events", response_model=List[StatusEventResponse])
async def get_events(
    limit: int = Query(50, ge=1, le=500),
    recorder: BackgroundRecorder = Depends(get_recorder)
):
    """Recent status events, oldest first."""
    return [
        StatusEventResponse(event=message.event.value, payload=message.payload, at=message.at)
        for message in recorder.reporter.recent(limit)
    ]


@router.delete("/delivered")
async def purge_delivered(recorder: BackgroundRecorder = Depends(get_recorder)):
    """Drop records the sink has already acknowledged."""
    purged = await recorder.store.purge_delivered()
    return {"purged": purged}
