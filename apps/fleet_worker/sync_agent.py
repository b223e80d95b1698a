from __future__ import annotations

import logging

from apps.fleet_backend.sync import sync_all
from common_core.db import FleetSessionLocal

log = logging.getLogger("fleettrack.sync_agent")


def run_sync_all_once() -> dict:
    db = FleetSessionLocal()
    try:
        res = sync_all(db)
        for err in res["errors"]:
            log.warning(
                "sync_entity_failed",
                extra={"unit_id": err["entity_id"], "code": err["code"], "err": err["error"]},
            )
        return res
    finally:
        db.close()
