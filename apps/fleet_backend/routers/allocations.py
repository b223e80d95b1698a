from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from apps.fleet_backend.events import to_naive_utc
from apps.fleet_backend.queries import (
    get_active_allocations,
    get_active_downtime_by_unit,
    get_active_downtimes,
    get_site_summary,
)
from apps.fleet_backend.security_deps import require_perm
from common_core.db import FleetSessionLocal

router = APIRouter(prefix="/allocations", tags=["allocations"])


@router.get("/active")
def active(
    site_id: Optional[str] = None,
    at: Optional[datetime] = None,
    claims=Depends(require_perm("state.view")),
):
    db = FleetSessionLocal()
    try:
        return get_active_allocations(db, site_id=site_id, reference_time=to_naive_utc(at))
    finally:
        db.close()


@router.get("/downtimes")
def downtimes(
    unit_id: Optional[str] = None,
    at: Optional[datetime] = None,
    claims=Depends(require_perm("state.view")),
):
    db = FleetSessionLocal()
    try:
        if unit_id:
            dt = get_active_downtime_by_unit(db, unit_id, to_naive_utc(at))
            return [dt] if dt else []
        return get_active_downtimes(db, to_naive_utc(at))
    finally:
        db.close()


@router.get("/sites/{site_id}/summary")
def site_summary(site_id: str, at: Optional[datetime] = None, claims=Depends(require_perm("state.view"))):
    db = FleetSessionLocal()
    try:
        return get_site_summary(db, site_id, to_naive_utc(at))
    finally:
        db.close()
