from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from apps.fleet_backend.approval import approve_event, reject_event, submit_event
from apps.fleet_backend.errors import http_status_for
from apps.fleet_backend.events import EventDraft
from apps.fleet_backend.models import AllocationEvent
from apps.fleet_backend.security_deps import require_perm
from apps.fleet_backend.services import event_to_dict, list_events
from common_core.db import FleetSessionLocal
from common_core.request_id import current_request_id

log = logging.getLogger("fleettrack.events")
router = APIRouter(prefix="/events", tags=["events"])


class RejectIn(BaseModel):
    reason: str = Field(default="", max_length=2000)


def _raise_on_failure(res: dict) -> dict:
    if not res.get("success"):
        raise HTTPException(status_code=http_status_for(res.get("code", "")), detail=res)
    return res


@router.post("")
def create_event(body: EventDraft, request: Request, claims=Depends(require_perm("event.submit"))):
    db = FleetSessionLocal()
    try:
        res = submit_event(db, body, claims.get("sub"), current_request_id(request))
    except Exception as e:
        db.rollback()
        log.exception("event_submit_failed")
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        db.close()
    return _raise_on_failure(res)


@router.get("")
def get_events(
    unit_id: Optional[str] = None,
    status: Optional[str] = Query(default=None, pattern="^(pending|approved|rejected)$"),
    limit: int = Query(default=100, ge=1, le=1000),
    claims=Depends(require_perm("event.view")),
):
    db = FleetSessionLocal()
    try:
        return [event_to_dict(ev) for ev in list_events(db, unit_id=unit_id, status=status, limit=limit)]
    finally:
        db.close()


@router.get("/{event_id}")
def get_event(event_id: str, claims=Depends(require_perm("event.view"))):
    db = FleetSessionLocal()
    try:
        ev = db.get(AllocationEvent, event_id)
        if ev is None:
            raise HTTPException(status_code=404, detail="EVENT_NOT_FOUND")
        return event_to_dict(ev)
    finally:
        db.close()


@router.post("/{event_id}/approve")
def approve(event_id: str, request: Request, claims=Depends(require_perm("event.approve"))):
    db = FleetSessionLocal()
    try:
        res = approve_event(db, event_id, claims.get("sub"), current_request_id(request))
    except Exception as e:
        db.rollback()
        log.exception("event_approve_failed", extra={"event_id": event_id})
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        db.close()
    return _raise_on_failure(res)


@router.post("/{event_id}/reject")
def reject(event_id: str, body: RejectIn, request: Request, claims=Depends(require_perm("event.approve"))):
    db = FleetSessionLocal()
    try:
        res = reject_event(db, event_id, claims.get("sub"), body.reason, current_request_id(request))
    except Exception as e:
        db.rollback()
        log.exception("event_reject_failed", extra={"event_id": event_id})
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        db.close()
    return _raise_on_failure(res)
