"""Cancellation request repository.

Every state change of a ``CancellationRequest`` goes through here:
``pending -> completed | failed`` (scheduler) and ``pending -> revoked``
(owner/administrator, grace mode only, before the scheduled time).
"""
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from panel.core.errors import CancellationAlreadyPending, CancellationNotFound, CancellationNotRevocable
from panel.models import CancellationMode, CancellationRequest, CancellationStatus
from panel.repositories import billing as billing_repo


def scheduled_deletion_time(
    mode: CancellationMode,
    now: datetime,
    *,
    grace_days: int,
    immediate_minutes: int,
) -> datetime:
    if mode == CancellationMode.IMMEDIATE:
        return now + timedelta(minutes=immediate_minutes)
    return now + timedelta(days=grace_days)


def get_for_update(db: Session, request_id: int) -> CancellationRequest | None:
    return (
        db.query(CancellationRequest)
        .filter(CancellationRequest.id == request_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_pending_for_resource(db: Session, resource_id: str) -> CancellationRequest | None:
    return (
        db.query(CancellationRequest)
        .filter(
            CancellationRequest.resource_id == str(resource_id),
            CancellationRequest.status == CancellationStatus.PENDING,
        )
        .first()
    )


def has_completed_cancellation(db: Session, resource_id: str) -> bool:
    row = (
        db.query(CancellationRequest.id)
        .filter(
            CancellationRequest.resource_id == str(resource_id),
            CancellationRequest.status == CancellationStatus.COMPLETED,
        )
        .first()
    )
    return row is not None


def list_for_owner(db: Session, owner_id: str, statuses=None) -> list[CancellationRequest]:
    query = db.query(CancellationRequest).filter(CancellationRequest.owner_id == owner_id)
    if statuses:
        query = query.filter(CancellationRequest.status.in_(tuple(statuses)))
    return query.order_by(CancellationRequest.id.desc()).all()


def create_pending(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    mode: CancellationMode,
    reason: str | None,
    now: datetime,
    scheduled_deletion_at: datetime,
) -> CancellationRequest:
    """Insert a pending request, refusing a second one for the same resource.

    The billing row of the resource (when there is one) is locked first so two
    callers cannot both pass the pending check; the partial unique index on
    ``resource_id WHERE status = 'pending'`` catches anything else.
    """
    billing_repo.lock_resource(db, resource_id)
    existing = get_pending_for_resource(db, resource_id)
    if existing:
        raise CancellationAlreadyPending(str(resource_id), existing.id)

    request = CancellationRequest(
        owner_id=owner_id,
        resource_id=str(resource_id),
        mode=mode,
        status=CancellationStatus.PENDING,
        reason=reason,
        requested_at=now,
        scheduled_deletion_at=scheduled_deletion_at,
    )
    db.add(request)
    db.flush()
    return request


def revoke(db: Session, request_id: int, now: datetime) -> CancellationRequest:
    request = get_for_update(db, request_id)
    if not request:
        raise CancellationNotFound(f"Cancellation request {request_id} not found")
    if request.status != CancellationStatus.PENDING:
        raise CancellationNotRevocable(f"Cancellation request {request_id} is already {request.status.value}")
    if request.mode == CancellationMode.IMMEDIATE:
        raise CancellationNotRevocable("Immediate cancellations cannot be revoked")
    if request.scheduled_deletion_at <= now:
        raise CancellationNotRevocable("The scheduled deletion time has already passed")
    request.status = CancellationStatus.REVOKED
    request.revoked_at = now
    return request


def due_cancellations(db: Session, now: datetime) -> list[int]:
    rows = (
        db.query(CancellationRequest.id)
        .filter(
            CancellationRequest.status == CancellationStatus.PENDING,
            CancellationRequest.scheduled_deletion_at <= now,
        )
        .order_by(CancellationRequest.scheduled_deletion_at, CancellationRequest.id)
        .all()
    )
    return [row[0] for row in rows]


def mark_completed(request: CancellationRequest, now: datetime) -> None:
    request.status = CancellationStatus.COMPLETED
    request.completed_at = now
    request.error_message = None


def mark_failed(request: CancellationRequest, error_message: str) -> None:
    request.status = CancellationStatus.FAILED
    request.error_message = (error_message or "Unknown error")[:2000]
