from __future__ import annotations

import os

from sqlalchemy import select

from apps.fleet_backend.models import EventRetryQueue
from common_core.db import FleetSessionLocal

STATUS = os.environ.get("STATUS", "pending")
LIMIT = int(os.environ.get("LIMIT", "20"))


def inspect_queue():
    db = FleetSessionLocal()
    try:
        print(f"--- EVENT RETRY QUEUE ({STATUS}) ---")
        rows = db.execute(
            select(EventRetryQueue)
            .where(EventRetryQueue.status == STATUS)
            .order_by(EventRetryQueue.id.desc())
            .limit(LIMIT)
        ).scalars().all()

        if not rows:
            print("No queued items.")
        for r in rows:
            print(
                f"ID: {r.id} | Event: {r.event_id} | Action: {r.action_type} | "
                f"Tries: {r.retry_count}/{r.max_retries} | Next: {r.next_attempt_at_utc} | Err: {(r.last_error or '')[:80]}"
            )
    finally:
        db.close()


if __name__ == "__main__":
    inspect_queue()
