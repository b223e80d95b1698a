"""Write-back of derived state onto the denormalized unit/extension columns.

The columns are a cache for listings. Every function here recomputes the
state from the event log and only writes when the cached values differ.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from apps.fleet_backend.errors import NOT_FOUND, STATE_INCONSISTENCY, classify_error
from apps.fleet_backend.events import utcnow
from apps.fleet_backend.models import Extension, Unit
from apps.fleet_backend.services import load_extension_events, load_unit_events
from apps.fleet_backend.state_calculator import (
    EXTENSION,
    UNIT,
    DerivedState,
    derive_extension_state,
    derive_unit_state,
)

log = logging.getLogger("fleettrack.sync")


def _failure(code: str, error: str) -> dict[str, Any]:
    return {"success": False, "changed": False, "code": code, "error": error}


def _inconsistent(state: DerivedState) -> dict[str, Any]:
    kinds = ", ".join(sorted({i.kind for i in state.inconsistencies}))
    return _failure(STATE_INCONSISTENCY, f"event history is inconsistent ({kinds})")


def _db_failure(db, entity_id: str, e: SQLAlchemyError) -> dict[str, Any]:
    db.rollback()
    err = classify_error(e)
    log.error("sync_write_failed", extra={"unit_id": entity_id, "code": err.code, "err": err.message})
    return _failure(err.code, err.message)


def sync_unit(db, unit_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    try:
        unit = db.get(Unit, unit_id)
        if unit is None:
            return _failure(NOT_FOUND, f"unit {unit_id} not found")

        state = derive_unit_state(unit_id, load_unit_events(db, unit_id), now)
        if state.inconsistencies:
            log.warning("sync_skipped_inconsistent", extra={"unit_id": unit_id, "count": len(state.inconsistencies)})
            return _inconsistent(state)

        if unit.status == state.status and unit.current_site_id == state.current_site_id:
            return {"success": True, "changed": False}

        unit.status = state.status
        unit.current_site_id = state.current_site_id
        unit.status_synced_at_utc = now
        db.commit()
    except SQLAlchemyError as e:
        return _db_failure(db, unit_id, e)

    log.info("unit_synced", extra={"unit_id": unit_id})
    return {"success": True, "changed": True}


def sync_extension(db, extension_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    try:
        ext = db.get(Extension, extension_id)
        if ext is None:
            return _failure(NOT_FOUND, f"extension {extension_id} not found")

        state = derive_extension_state(extension_id, load_extension_events(db, extension_id), now)
        if state.inconsistencies:
            log.warning(
                "sync_skipped_inconsistent",
                extra={"extension_id": extension_id, "count": len(state.inconsistencies)},
            )
            return _inconsistent(state)

        if ext.status == state.status and ext.current_machine_id == state.current_machine_id:
            return {"success": True, "changed": False}

        ext.status = state.status
        ext.current_machine_id = state.current_machine_id
        ext.status_synced_at_utc = now
        db.commit()
    except SQLAlchemyError as e:
        return _db_failure(db, extension_id, e)

    log.info("extension_synced", extra={"extension_id": extension_id})
    return {"success": True, "changed": True}


def sync_entity(db, entity_id: str, kind: str = UNIT, now: datetime | None = None) -> dict[str, Any]:
    if kind == EXTENSION:
        return sync_extension(db, entity_id, now)
    return sync_unit(db, entity_id, now)


def sync_all(db, now: datetime | None = None) -> dict[str, Any]:
    """Reconcile every active unit, then every active extension.

    One entity failing does not stop the run; its error is collected.
    """
    now = now or utcnow()
    unit_ids = list(db.execute(select(Unit.id).where(Unit.is_active.is_(True)).order_by(Unit.id)).scalars())
    ext_ids = list(
        db.execute(select(Extension.id).where(Extension.is_active.is_(True)).order_by(Extension.id)).scalars()
    )

    synced = 0
    changed = 0
    errors: list[dict[str, Any]] = []
    targets = [(UNIT, uid) for uid in unit_ids] + [(EXTENSION, eid) for eid in ext_ids]
    for kind, entity_id in targets:
        try:
            res = sync_entity(db, entity_id, kind, now)
        except Exception as e:
            db.rollback()
            log.exception("sync_entity_crashed", extra={"unit_id": entity_id})
            res = _failure(classify_error(e).code, str(e)[:300])
        if res["success"]:
            synced += 1
            if res["changed"]:
                changed += 1
        else:
            errors.append({"entity_type": kind, "entity_id": entity_id, "code": res["code"], "error": res["error"]})

    log.info("sync_all_done", extra={"count": synced})
    return {"success": not errors, "synced": synced, "changed": changed, "errors": errors}
