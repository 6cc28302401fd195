import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from panel.core.config import get_settings
from panel.models import CancellationMode, CancellationRequest, CancellationStatus
from panel.models.base import utcnow
from panel.repositories import billing as billing_repo
from panel.repositories import cancellations as cancellation_repo
from panel.services.virtfusion import VirtFusionApiError

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class CancellationSummary:
    due: int = 0
    completed: int = 0
    failed: int = 0
    deferred: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def request_cancellation(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    mode: CancellationMode,
    reason: str | None = None,
    now: datetime | None = None,
) -> CancellationRequest:
    now = now or utcnow()
    scheduled_at = cancellation_repo.scheduled_deletion_time(
        mode,
        now,
        grace_days=settings.grace_cancellation_days,
        immediate_minutes=settings.immediate_cancellation_minutes,
    )
    try:
        request = cancellation_repo.create_pending(
            db,
            owner_id=owner_id,
            resource_id=resource_id,
            mode=mode,
            reason=reason,
            now=now,
            scheduled_deletion_at=scheduled_at,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(
        "Cancellation %s requested for server %s (%s), deletion at %s",
        request.id,
        resource_id,
        mode.value,
        scheduled_at.isoformat(),
    )
    return request


def revoke_cancellation(db: Session, request_id: int, now: datetime | None = None) -> CancellationRequest:
    now = now or utcnow()
    try:
        request = cancellation_repo.revoke(db, request_id, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Cancellation %s revoked for server %s", request.id, request.resource_id)
    return request


def _claim(session_factory: sessionmaker, request_id: int, now: datetime) -> str | None:
    db = session_factory()
    try:
        request = cancellation_repo.get_for_update(db, request_id)
        resource_id = None
        if request and request.status == CancellationStatus.PENDING and request.scheduled_deletion_at <= now:
            resource_id = request.resource_id
        db.rollback()
        return resource_id
    finally:
        db.close()


def _finish(
    session_factory: sessionmaker,
    request_id: int,
    resource_id: str,
    now: datetime,
    error_message: str | None = None,
) -> bool:
    db = session_factory()
    try:
        # Billing row first, same lock order as create_pending.
        record = billing_repo.lock_resource(db, resource_id)
        request = cancellation_repo.get_for_update(db, request_id)
        # Revoked between the claim and the hypervisor call; nothing to record.
        if request is None or request.status != CancellationStatus.PENDING:
            db.rollback()
            return False
        if error_message is None:
            cancellation_repo.mark_completed(request, now)
            if record is not None:
                billing_repo.mark_cancelled(record)
        else:
            cancellation_repo.mark_failed(request, error_message)
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def process_cancellation(session_factory: sessionmaker, request_id: int, hypervisor, now: datetime) -> str:
    """Carry out one due request. Returns "completed", "failed", "deferred" or "skipped"."""
    resource_id = _claim(session_factory, request_id, now)
    if resource_id is None:
        return "skipped"

    try:
        deleted = hypervisor.delete_server(resource_id)
    except VirtFusionApiError as exc:
        if exc.is_transient:
            logger.warning("Transient error deleting server %s, will retry: %s", resource_id, exc.message)
            return "deferred"
        logger.error("Failed to delete server %s for cancellation %s: %s", resource_id, request_id, exc.message)
        _finish(session_factory, request_id, resource_id, now, error_message=exc.message)
        return "failed"

    if not deleted:
        logger.info("Server %s already gone; marking cancellation %s completed", resource_id, request_id)
    if _finish(session_factory, request_id, resource_id, now):
        logger.info("Cancellation %s completed, server %s deleted", request_id, resource_id)
        return "completed"
    return "skipped"


def run_cancellation_scheduler(session_factory: sessionmaker, hypervisor, now: datetime | None = None) -> CancellationSummary:
    now = now or utcnow()
    summary = CancellationSummary()

    db = session_factory()
    try:
        due_ids = cancellation_repo.due_cancellations(db, now)
    finally:
        db.close()

    summary.due = len(due_ids)
    for request_id in due_ids:
        try:
            result = process_cancellation(session_factory, request_id, hypervisor, now)
        except Exception:
            logger.exception("Error processing cancellation %s", request_id)
            summary.errors += 1
            continue
        if result == "completed":
            summary.completed += 1
        elif result == "failed":
            summary.failed += 1
        elif result == "deferred":
            summary.deferred += 1

    if summary.due:
        logger.info("Cancellation pass completed: %s", summary.as_dict())
    return summary
