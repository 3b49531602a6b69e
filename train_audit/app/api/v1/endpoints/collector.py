"""
Reference Collector Endpoints.

HTTP sink honouring the recorder's wire contract: form fields ``action`` and
``data`` (JSON array of rows), JSON reply with a ``status`` marker and the ids
it acknowledged. Re-delivered rows are acknowledged without being duplicated.
"""

import json
import logging
from typing import List

from fastapi import APIRouter, Depends, Form, Query
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from train_audit.app.db.session import get_db
from train_audit.app.models.collected_point import CollectedPoint
from train_audit.app.schemas.recorder import CollectorResponse, CollectedPointResponse
from train_audit.app.schemas.sink import SinkRow

router = APIRouter(prefix="/collector", tags=["Collector"])
logger = logging.getLogger("train_audit.collector")

SAVE_ACTION = "saveData"


@router.post("/exec", response_model=CollectorResponse)
async def collect(
    action: str = Form(...),
    data: str = Form("[]"),
    db: AsyncSession = Depends(get_db)
):
    """
    Store a batch of rows.
    
    Each valid row is stored once and acknowledged by id; invalid rows are
    listed as rejected and left for the client to retry or drop.
    """
    if action != SAVE_ACTION:
        return CollectorResponse(status="error", message=f"Unknown action: {action}")
    
    try:
        rows = json.loads(data)
    except ValueError:
        return CollectorResponse(status="error", message="data is not valid JSON")
    if not isinstance(rows, list):
        return CollectorResponse(status="error", message="data must be a JSON array")
    
    valid: List[SinkRow] = []
    rejected: List[str] = []
    for raw in rows:
        try:
            valid.append(SinkRow.model_validate(raw))
        except ValidationError:
            if isinstance(raw, dict) and raw.get("id") is not None:
                rejected.append(str(raw["id"]))
    
    # Skip ids already stored (re-delivered batch)
    ids = [row.id for row in valid]
    existing = set()
    if ids:
        result = await db.execute(
            select(CollectedPoint.record_id).where(CollectedPoint.record_id.in_(ids))
        )
        existing = set(result.scalars().all())
    
    seen = set(existing)
    for row in valid:
        if row.id in seen:
            continue
        seen.add(row.id)
        db.add(CollectedPoint(
            record_id=row.id,
            recorded_at=row.timestamp,
            latitude=row.latitude,
            longitude=row.longitude,
            speed_kmh=row.speed_kmh,
            heading=row.heading,
            accuracy_meters=row.accuracy_meters,
            event_type=row.event_type,
            stop_duration=row.stop_duration,
            route_line=row.route_line,
            deviation_meters=row.deviation_meters,
            direction=row.direction,
            trip_identifier=row.trip_identifier,
        ))
    await db.commit()
    
    logger.info(
        "Batch collected",
        extra={"received": len(rows), "stored": len(seen) - len(existing), "rejected": len(rejected)}
    )
    return CollectorResponse(status="success", acknowledged=ids, rejected=rejected)


@router.get("/points", response_model=List[CollectedPointResponse])
async def list_points(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Most recently received rows."""
    result = await db.execute(
        select(CollectedPoint).order_by(CollectedPoint.id.desc()).limit(limit)
    )
    return [CollectedPointResponse.model_validate(point) for point in result.scalars().all()]
