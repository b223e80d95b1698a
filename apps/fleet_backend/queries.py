from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select

from apps.fleet_backend.events import iso, utcnow
from apps.fleet_backend.models import Unit
from apps.fleet_backend.services import (
    active_downtime_for,
    load_events_by_unit,
    load_unit_events,
)
from apps.fleet_backend.state_calculator import ALLOCATED, EXCEEDED, derive_unit_state


def _active_units(db) -> list[Unit]:
    return list(
        db.execute(select(Unit).where(Unit.is_active.is_(True)).order_by(Unit.unit_number.asc())).scalars().all()
    )


def get_active_allocations(
    db, site_id: str | None = None, reference_time: datetime | None = None
) -> list[dict[str, Any]]:
    """Units holding an allocation at `reference_time`, computed from their history."""
    ref = reference_time or utcnow()
    units = _active_units(db)
    history = load_events_by_unit(db, [u.id for u in units])
    out: list[dict[str, Any]] = []
    for u in units:
        state = derive_unit_state(u.id, history[u.id], ref)
        if not state.has_active_allocation:
            continue
        if site_id and state.current_site_id != site_id:
            continue
        out.append(
            {
                "unit_id": u.id,
                "unit_number": u.unit_number,
                "site_id": state.current_site_id,
                "status": state.status,
                "allocation_event_id": state.current_allocation_event_id,
                "allocation_start": iso(state.allocation_start),
                "end_date": iso(state.end_date),
                "construction_type": state.construction_type,
                "lot_building_number": state.lot_building_number,
                "is_in_downtime": state.is_in_downtime,
                "attached_extensions": [a.extension_id for a in state.attached_extensions],
            }
        )
    return out


def get_active_downtimes(db, reference_time: datetime | None = None) -> list[dict[str, Any]]:
    ref = reference_time or utcnow()
    units = _active_units(db)
    history = load_events_by_unit(db, [u.id for u in units])
    out = []
    for u in units:
        dt = active_downtime_for(u.id, history[u.id], ref)
        if dt is not None:
            out.append({**dt.to_dict(), "unit_number": u.unit_number})
    return out


def get_active_downtime_by_unit(db, unit_id: str, reference_time: datetime | None = None) -> Optional[dict[str, Any]]:
    dt = active_downtime_for(unit_id, load_unit_events(db, unit_id), reference_time)
    return dt.to_dict() if dt is not None else None


def get_site_summary(db, site_id: str, reference_time: datetime | None = None) -> dict[str, Any]:
    allocations = get_active_allocations(db, site_id=site_id, reference_time=reference_time)
    in_downtime = sum(1 for a in allocations if a["is_in_downtime"])
    return {
        "site_id": site_id,
        "total_units": len(allocations),
        "in_downtime": in_downtime,
        "working": len(allocations) - in_downtime,
        "exceeded": sum(1 for a in allocations if a["status"] == EXCEEDED),
        "allocated": sum(1 for a in allocations if a["status"] == ALLOCATED),
    }
