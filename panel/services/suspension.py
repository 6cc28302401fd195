import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from panel.core.config import get_settings
from panel.models import AWAITING_SUSPENSION_STATUSES, BillingStatus, CancellationMode
from panel.models.base import utcnow
from panel.repositories import billing as billing_repo
from panel.repositories import cancellations as cancellation_repo
from panel.services.billing import attempt_charge
from panel.services.virtfusion import VirtFusionApiError

settings = get_settings()
logger = logging.getLogger(__name__)

NON_PAYMENT_REASON = "Automatically cancelled due to non-payment"


@dataclass
class EscalationSummary:
    due_for_suspension: int = 0
    suspended: int = 0
    due_for_termination: int = 0
    cancellations_created: int = 0
    recovered: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _last_chance_before_suspend(session_factory: sessionmaker, billing_id: int, now: datetime) -> tuple[str | None, bool]:
    """Try to collect once more. Returns (resource_id to suspend, recovered)."""
    db = session_factory()
    try:
        record = billing_repo.get_for_update(db, billing_id)
        if (
            record is None
            or record.status not in AWAITING_SUSPENSION_STATUSES
            or record.suspend_at is None
            or record.suspend_at > now
        ):
            db.rollback()
            return None, False
        outcome = attempt_charge(db, record, now)
        resource_id = record.resource_id
        db.commit()
        if outcome.is_paid:
            logger.info("Server %s paid during grace period; not suspending", resource_id)
            return None, True
        if record.status == BillingStatus.CANCELLED:
            return None, False
        return resource_id, False
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _record_suspension(session_factory: sessionmaker, billing_id: int) -> bool:
    db = session_factory()
    try:
        record = billing_repo.get_for_update(db, billing_id)
        # A top-up may have paid it while the hypervisor call was in flight.
        if record is None or record.status not in AWAITING_SUSPENSION_STATUSES:
            db.rollback()
            return False
        billing_repo.mark_suspended(record)
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def suspend_resource(session_factory: sessionmaker, billing_id: int, hypervisor, now: datetime) -> str:
    """Phase A for one record. Returns "suspended", "recovered" or "skipped"."""
    resource_id, recovered = _last_chance_before_suspend(session_factory, billing_id, now)
    if recovered:
        return "recovered"
    if resource_id is None:
        return "skipped"

    try:
        hypervisor.suspend_server(resource_id)
    except VirtFusionApiError as exc:
        if not exc.is_not_found:
            raise
        logger.warning("Server %s not found on the hypervisor while suspending", resource_id)

    if _record_suspension(session_factory, billing_id):
        logger.info("Suspended server %s for non-payment", resource_id)
        return "suspended"
    return "skipped"


def terminate_resource(session_factory: sessionmaker, billing_id: int, hypervisor, now: datetime) -> str:
    """Phase B for one record. Returns "cancelled", "recovered" or "skipped"."""
    db = session_factory()
    try:
        record = billing_repo.get_for_update(db, billing_id)
        if record is None or record.status != BillingStatus.SUSPENDED:
            db.rollback()
            return "skipped"
        resource_id = record.resource_id
        outcome = attempt_charge(db, record, now)
        if outcome.is_paid:
            db.commit()
            recovered = True
        elif record.status == BillingStatus.CANCELLED:
            db.commit()
            return "skipped"
        else:
            recovered = False
            existing = cancellation_repo.get_pending_for_resource(db, resource_id)
            if existing:
                logger.info(
                    "Server %s already has pending cancellation %s; not creating another",
                    resource_id,
                    existing.id,
                )
                db.rollback()
                return "skipped"
            request = cancellation_repo.create_pending(
                db,
                owner_id=record.owner_id,
                resource_id=resource_id,
                mode=CancellationMode.IMMEDIATE,
                reason=NON_PAYMENT_REASON,
                now=now,
                scheduled_deletion_at=cancellation_repo.scheduled_deletion_time(
                    CancellationMode.IMMEDIATE,
                    now,
                    grace_days=settings.grace_cancellation_days,
                    immediate_minutes=settings.immediate_cancellation_minutes,
                ),
            )
            billing_repo.mark_cancelled(record)
            db.commit()
            logger.info(
                "Server %s overdue for %s days; scheduled cancellation %s at %s",
                resource_id,
                settings.overdue_cancel_days,
                request.id,
                request.scheduled_deletion_at.isoformat(),
            )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if recovered:
        try:
            hypervisor.unsuspend_server(resource_id)
        except Exception:
            logger.exception("Server %s is paid but could not be unsuspended; needs manual unsuspend", resource_id)
        return "recovered"
    return "cancelled"


def run_suspension_escalator(session_factory: sessionmaker, hypervisor, now: datetime | None = None) -> EscalationSummary:
    now = now or utcnow()
    summary = EscalationSummary()

    db = session_factory()
    try:
        suspension_ids = billing_repo.due_for_suspension(db, now)
    finally:
        db.close()

    summary.due_for_suspension = len(suspension_ids)
    for billing_id in suspension_ids:
        try:
            result = suspend_resource(session_factory, billing_id, hypervisor, now)
        except Exception:
            logger.exception("Error suspending billing record %s", billing_id)
            summary.errors += 1
            continue
        if result == "suspended":
            summary.suspended += 1
        elif result == "recovered":
            summary.recovered += 1

    db = session_factory()
    try:
        termination_ids = billing_repo.due_for_termination(db, now, settings.overdue_cancel_days)
    finally:
        db.close()

    summary.due_for_termination = len(termination_ids)
    for billing_id in termination_ids:
        try:
            result = terminate_resource(session_factory, billing_id, hypervisor, now)
        except Exception:
            logger.exception("Error escalating overdue billing record %s", billing_id)
            summary.errors += 1
            continue
        if result == "cancelled":
            summary.cancellations_created += 1
        elif result == "recovered":
            summary.recovered += 1

    if summary.due_for_suspension or summary.due_for_termination:
        logger.info("Suspension escalator completed: %s", summary.as_dict())
    return summary
