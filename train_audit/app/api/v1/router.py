"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from train_audit.app.api.v1.endpoints import recorder, collector

router = APIRouter()

# Host-side recorder control
router.include_router(recorder.router)

# Reference collector (remote sink)
router.include_router(collector.router)
