from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import func, select, text

from apps.fleet_backend.models import EventRetryQueue
from common_core.config import settings
from common_core.db import FleetSessionLocal

router = APIRouter(tags=["health"])


@router.get("/health/live")
def live():
    return {"ok": True}


@router.get("/health/ready")
def ready():
    db = FleetSessionLocal()
    try:
        db.execute(text("SELECT 1"))
        pending_retries = db.execute(
            select(func.count()).select_from(EventRetryQueue).where(EventRetryQueue.status == "pending")
        ).scalar_one()
    finally:
        db.close()
    return {"ok": True, "env": settings.app_env, "pending_retries": int(pending_retries)}


@router.get("/healthz")
def healthz():
    return live()


@router.get("/readyz")
def readyz():
    return ready()
