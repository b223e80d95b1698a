from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from apps.fleet_backend.errors import http_status_for
from apps.fleet_backend.services import audit_write
from apps.fleet_backend.sync import sync_all, sync_extension, sync_unit
from apps.fleet_backend.security_deps import require_perm
from common_core.db import FleetSessionLocal
from common_core.request_id import current_request_id

log = logging.getLogger("fleettrack.sync_api")
router = APIRouter(prefix="/sync", tags=["sync"])


def _entity_response(res: dict) -> dict:
    if not res["success"]:
        raise HTTPException(status_code=http_status_for(res["code"]), detail=res)
    return res


@router.post("/units/{unit_id}")
def sync_one_unit(unit_id: str, claims=Depends(require_perm("sync.run"))):
    db = FleetSessionLocal()
    try:
        res = sync_unit(db, unit_id)
    finally:
        db.close()
    return _entity_response(res)


@router.post("/extensions/{extension_id}")
def sync_one_extension(extension_id: str, claims=Depends(require_perm("sync.run"))):
    db = FleetSessionLocal()
    try:
        res = sync_extension(db, extension_id)
    finally:
        db.close()
    return _entity_response(res)


@router.post("/all")
def sync_everything(request: Request, claims=Depends(require_perm("sync.run"))):
    db = FleetSessionLocal()
    try:
        res = sync_all(db)
        audit_write(
            db,
            action="SYNC_ALL",
            entity_type="fleet",
            entity_id="*",
            details={"synced": res["synced"], "changed": res["changed"], "errors": len(res["errors"])},
            actor_user_id=claims.get("sub"),
            request_id=current_request_id(request),
        )
        db.commit()
        return res
    except Exception as e:
        db.rollback()
        log.exception("sync_all_failed")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        db.close()
