from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from panel.models import (
    AWAITING_SUSPENSION_STATUSES,
    CHARGEABLE_STATUSES,
    BillingStatus,
    ResourceBilling,
)


def create(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    plan_id: int,
    monthly_price: int,
    deployed_at: datetime,
    next_charge_at: datetime,
) -> ResourceBilling:
    if monthly_price < 0:
        raise ValueError("monthly_price must not be negative")
    record = ResourceBilling(
        owner_id=owner_id,
        resource_id=str(resource_id),
        plan_id=plan_id,
        monthly_price=monthly_price,
        status=BillingStatus.ACTIVE,
        auto_renew=True,
        deployed_at=deployed_at,
        next_charge_at=next_charge_at,
        suspend_at=None,
    )
    db.add(record)
    db.flush()
    return record


def get_for_update(db: Session, billing_id: int) -> ResourceBilling | None:
    return (
        db.query(ResourceBilling)
        .filter(ResourceBilling.id == billing_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def lock_resource(db: Session, resource_id: str) -> ResourceBilling | None:
    return (
        db.query(ResourceBilling)
        .filter(ResourceBilling.resource_id == str(resource_id))
        .with_for_update()
        .populate_existing()
        .first()
    )


def is_due_for_charge(record: ResourceBilling, now: datetime) -> bool:
    return bool(
        record.auto_renew
        and record.status in CHARGEABLE_STATUSES
        and record.next_charge_at is not None
        and record.next_charge_at <= now
    )


def due_for_charge(db: Session, now: datetime) -> list[int]:
    rows = (
        db.query(ResourceBilling.id)
        .filter(
            ResourceBilling.status.in_(CHARGEABLE_STATUSES),
            ResourceBilling.auto_renew.is_(True),
            ResourceBilling.next_charge_at <= now,
        )
        .order_by(ResourceBilling.next_charge_at, ResourceBilling.id)
        .all()
    )
    return [row[0] for row in rows]


def due_for_suspension(db: Session, now: datetime) -> list[int]:
    rows = (
        db.query(ResourceBilling.id)
        .filter(
            ResourceBilling.status.in_(AWAITING_SUSPENSION_STATUSES),
            ResourceBilling.suspend_at.isnot(None),
            ResourceBilling.suspend_at <= now,
        )
        .order_by(ResourceBilling.suspend_at, ResourceBilling.id)
        .all()
    )
    return [row[0] for row in rows]


def due_for_termination(db: Session, now: datetime, overdue_days: int) -> list[int]:
    cutoff = now - timedelta(days=overdue_days)
    rows = (
        db.query(ResourceBilling.id)
        .filter(
            ResourceBilling.status == BillingStatus.SUSPENDED,
            ResourceBilling.overdue_since.isnot(None),
            ResourceBilling.overdue_since <= cutoff,
        )
        .order_by(ResourceBilling.overdue_since, ResourceBilling.id)
        .all()
    )
    return [row[0] for row in rows]


def list_for_owner(db: Session, owner_id: str, statuses=None) -> list[ResourceBilling]:
    query = db.query(ResourceBilling).filter(ResourceBilling.owner_id == owner_id)
    if statuses:
        query = query.filter(ResourceBilling.status.in_(tuple(statuses)))
    return query.order_by(ResourceBilling.next_charge_at).all()


def mark_paid(record: ResourceBilling, *, next_charge_at: datetime, billed_at: datetime | None) -> None:
    record.status = BillingStatus.PAID
    record.next_charge_at = next_charge_at
    record.suspend_at = None
    record.overdue_since = None
    if billed_at is not None:
        record.last_billed_at = billed_at


def mark_unpaid(record: ResourceBilling, *, now: datetime, grace_days: int) -> bool:
    """Start the grace window. Only an active/paid record moves; returns whether it did."""
    if record.status not in (BillingStatus.ACTIVE, BillingStatus.PAID):
        return False
    record.status = BillingStatus.UNPAID
    record.suspend_at = now + timedelta(days=grace_days)
    record.overdue_since = now
    return True


def mark_suspended(record: ResourceBilling) -> None:
    record.status = BillingStatus.SUSPENDED
    if record.overdue_since is None:
        record.overdue_since = record.suspend_at


def mark_cancelled(record: ResourceBilling) -> None:
    record.status = BillingStatus.CANCELLED
    record.auto_renew = False
