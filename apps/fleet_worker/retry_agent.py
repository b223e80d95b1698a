"""Replays approvals/rejections that failed with a retryable error."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from apps.fleet_backend.approval import approve_event, reject_event
from apps.fleet_backend.events import APPROVED, REJECTED, utcnow
from apps.fleet_backend.models import AllocationEvent, EventRetryQueue
from common_core.config import settings
from common_core.db import FleetSessionLocal

log = logging.getLogger("fleettrack.retry_agent")


def _next_backoff(retry_count: int, now: datetime) -> datetime:
    secs = min(settings.retry_max_backoff_sec, settings.retry_base_backoff_sec * (2 ** max(0, retry_count - 1)))
    return now + timedelta(seconds=secs)


def _already_settled(db, item: EventRetryQueue) -> bool:
    # a concurrent request (or an earlier attempt) may already have done the work
    ev = db.get(AllocationEvent, item.event_id)
    wanted = APPROVED if item.action_type == "approve" else REJECTED
    return ev is not None and ev.status == wanted


def _attempt(db, item: EventRetryQueue, now: datetime) -> dict:
    if item.action_type == "approve":
        return approve_event(db, item.event_id, item.actor_id, None, enqueue_retry=False, now=now)
    return reject_event(db, item.event_id, item.actor_id, item.reason or "", None, enqueue_retry=False, now=now)


def process_retry_queue_once(batch: int | None = None, now: datetime | None = None) -> dict:
    batch = batch or settings.retry_batch_size
    now = now or utcnow()
    counts = {"completed": 0, "failed": 0, "rescheduled": 0}
    db = FleetSessionLocal()
    try:
        items = db.execute(
            select(EventRetryQueue)
            .where(EventRetryQueue.status == "pending")
            .where(
                (EventRetryQueue.next_attempt_at_utc.is_(None)) | (EventRetryQueue.next_attempt_at_utc <= now)
            )
            .order_by(EventRetryQueue.created_at_utc.asc())
            .limit(batch)
        ).scalars().all()

        for item in items:
            res = _attempt(db, item, now)
            item.retry_count = int(item.retry_count or 0) + 1
            item.updated_at_utc = now
            if res.get("success") or _already_settled(db, item):
                item.status = "completed"
                item.last_error = None
                counts["completed"] += 1
            elif not res.get("retryable") or item.retry_count >= item.max_retries:
                item.status = "failed"
                item.last_error = (res.get("message") or "")[:300]
                counts["failed"] += 1
                log.error(
                    "retry_exhausted",
                    extra={"event_id": item.event_id, "code": res.get("code"), "count": item.retry_count},
                )
            else:
                item.last_error = (res.get("message") or "")[:300]
                item.next_attempt_at_utc = _next_backoff(item.retry_count, now)
                counts["rescheduled"] += 1
            db.commit()
        return counts
    finally:
        db.close()
