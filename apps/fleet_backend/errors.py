from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from apps.fleet_backend.events import utcnow
from apps.fleet_backend.models import EventRetryQueue
from apps.fleet_backend.services import audit_write
from common_core.config import settings

log = logging.getLogger("fleettrack.errors")

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
PERMISSION_ERROR = "PERMISSION_ERROR"
CONNECTION_ERROR = "CONNECTION_ERROR"
STATE_INCONSISTENCY = "STATE_INCONSISTENCY"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

_HTTP_STATUS = {
    VALIDATION_ERROR: 400,
    NOT_FOUND: 404,
    PERMISSION_ERROR: 403,
    CONNECTION_ERROR: 503,
    STATE_INCONSISTENCY: 409,
    UNEXPECTED_ERROR: 500,
}


@dataclass(frozen=True)
class ErrorContext:
    event_id: Optional[str] = None
    actor_id: Optional[str] = None
    action_type: Optional[str] = None  # approve, reject, submit, sync
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class EventProcessingError(Exception):
    code = UNEXPECTED_ERROR
    is_retryable = True

    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()

    @property
    def http_status(self) -> int:
        return http_status_for(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "code": self.code, "retryable": self.is_retryable}


class EventValidationError(EventProcessingError):
    code = VALIDATION_ERROR
    is_retryable = False


class EventNotFoundError(EventProcessingError):
    code = NOT_FOUND
    is_retryable = False


class EventPermissionError(EventProcessingError):
    code = PERMISSION_ERROR
    is_retryable = False


class EventConnectionError(EventProcessingError):
    code = CONNECTION_ERROR
    is_retryable = True


class StateInconsistencyError(EventProcessingError):
    code = STATE_INCONSISTENCY
    is_retryable = False


def http_status_for(code: str) -> int:
    return _HTTP_STATUS.get(code, 500)


def _is_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def classify_error(exc: BaseException, ctx: ErrorContext | None = None) -> EventProcessingError:
    """Map an arbitrary failure onto the processing error taxonomy."""
    ctx = ctx or ErrorContext()
    if isinstance(exc, EventProcessingError):
        return exc
    if _is_connection_failure(exc):
        return EventConnectionError(f"database unavailable: {str(exc)[:200]}", ctx)
    return EventProcessingError(str(exc)[:300] or exc.__class__.__name__, ctx)


def enqueue_retry(db, error: EventProcessingError, ctx: ErrorContext, now: datetime | None = None) -> EventRetryQueue:
    now = now or utcnow()
    row = EventRetryQueue(
        event_id=ctx.event_id,
        actor_id=ctx.actor_id,
        action_type=ctx.action_type,
        reason=ctx.reason,
        error_details={"code": error.code, "message": error.message},
        status="pending",
        retry_count=0,
        max_retries=settings.retry_max_attempts,
        next_attempt_at_utc=now,
        last_error=error.message[:300],
        created_at_utc=now,
        updated_at_utc=now,
    )
    db.add(row)
    return row


def handle_event_error(
    db,
    exc: BaseException,
    ctx: ErrorContext,
    request_id: str | None = None,
    enqueue: bool = True,
) -> dict[str, Any]:
    """Log, audit and (for retryable failures) queue a failed approval/rejection.

    The caller must have rolled back its own transaction first; the audit row
    and the queue row are committed here on their own.
    """
    error = classify_error(exc, ctx)
    log.error(
        "event_processing_failed",
        extra={"event_id": ctx.event_id, "actor_id": ctx.actor_id, "code": error.code, "err": error.message},
    )

    queued = False
    try:
        audit_write(
            db,
            action="EVENT_ERROR",
            entity_type="allocation_event",
            entity_id=ctx.event_id or "-",
            details={
                "code": error.code,
                "message": error.message,
                "retryable": error.is_retryable,
                "context": ctx.to_dict(),
            },
            actor_user_id=ctx.actor_id,
            request_id=request_id,
        )
        if enqueue and error.is_retryable and ctx.event_id and ctx.action_type in ("approve", "reject"):
            enqueue_retry(db, error, ctx)
            queued = True
        db.commit()
    except SQLAlchemyError as e:
        # the database may be the thing that failed in the first place
        db.rollback()
        queued = False
        log.error("event_error_record_failed", extra={"event_id": ctx.event_id, "err": str(e)[:300]})

    if queued:
        log.info("event_retry_enqueued", extra={"event_id": ctx.event_id, "code": error.code})
    return error.to_dict()
