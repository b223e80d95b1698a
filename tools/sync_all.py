from __future__ import annotations

import os

from sqlalchemy import select

from apps.fleet_backend.models import Extension, Unit
from apps.fleet_backend.services import get_derived_state
from apps.fleet_backend.state_calculator import EXTENSION, UNIT
from apps.fleet_backend.sync import sync_all
from common_core.db import FleetSessionLocal

DRY_RUN = os.environ.get("DRY_RUN", "0") == "1"


def report_drift(db) -> int:
    drift = 0
    for u in db.execute(select(Unit).where(Unit.is_active.is_(True))).scalars():
        st = get_derived_state(db, u.id, kind=UNIT)
        if st.inconsistencies:
            print(f"unit {u.unit_number}: INCONSISTENT {[i.kind for i in st.inconsistencies]}")
        elif (u.status, u.current_site_id) != (st.status, st.current_site_id):
            drift += 1
            print(f"unit {u.unit_number}: {u.status}@{u.current_site_id} -> {st.status}@{st.current_site_id}")
    for x in db.execute(select(Extension).where(Extension.is_active.is_(True))).scalars():
        st = get_derived_state(db, x.id, kind=EXTENSION)
        if st.inconsistencies:
            print(f"extension {x.unit_number}: INCONSISTENT {[i.kind for i in st.inconsistencies]}")
        elif (x.status, x.current_machine_id) != (st.status, st.current_machine_id):
            drift += 1
            print(f"extension {x.unit_number}: {x.status}/{x.current_machine_id} -> {st.status}/{st.current_machine_id}")
    return drift


def main():
    db = FleetSessionLocal()
    try:
        if DRY_RUN:
            print(f"DRY_RUN drift={report_drift(db)}")
            return
        res = sync_all(db)
        print(f"COMMIT synced={res['synced']} changed={res['changed']} errors={len(res['errors'])}")
        for err in res["errors"]:
            print(f"  {err['entity_type']} {err['entity_id']}: {err['code']} {err['error']}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
