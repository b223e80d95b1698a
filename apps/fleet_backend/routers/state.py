from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from apps.fleet_backend.events import to_naive_utc
from apps.fleet_backend.models import Extension, Unit
from apps.fleet_backend.security_deps import require_perm
from apps.fleet_backend.services import get_derived_state
from apps.fleet_backend.state_calculator import EXTENSION, UNIT
from common_core.db import FleetSessionLocal

router = APIRouter(tags=["state"])


@router.get("/units/{unit_id}/state")
def unit_state(unit_id: str, at: Optional[datetime] = None, claims=Depends(require_perm("state.view"))):
    db = FleetSessionLocal()
    try:
        unit = db.get(Unit, unit_id)
        if unit is None:
            raise HTTPException(status_code=404, detail="UNIT_NOT_FOUND")
        state = get_derived_state(db, unit_id, to_naive_utc(at), kind=UNIT)
        return {
            **state.to_dict(),
            "unit_number": unit.unit_number,
            "cached_status": unit.status,
            "cached_site_id": unit.current_site_id,
        }
    finally:
        db.close()


@router.get("/extensions/{extension_id}/state")
def extension_state(extension_id: str, at: Optional[datetime] = None, claims=Depends(require_perm("state.view"))):
    db = FleetSessionLocal()
    try:
        ext = db.get(Extension, extension_id)
        if ext is None:
            raise HTTPException(status_code=404, detail="EXTENSION_NOT_FOUND")
        state = get_derived_state(db, extension_id, to_naive_utc(at), kind=EXTENSION)
        return {
            **state.to_dict(),
            "unit_number": ext.unit_number,
            "cached_status": ext.status,
            "cached_machine_id": ext.current_machine_id,
        }
    finally:
        db.close()
