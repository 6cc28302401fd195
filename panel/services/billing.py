"""Billing cycle engine.

Every tick charges each resource whose ``next_charge_at`` has passed, one
resource per transaction. The ledger idempotency key is derived from the
resource and the billing period it pays for, so a tick that fires twice, or
is retried after a crash between debit and commit, charges the period at most
once.
"""
import calendar
import enum
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from panel.core.config import get_settings
from panel.core.errors import InsufficientFunds
from panel.models import BillingStatus, LedgerEntryType, ResourceBilling
from panel.models.base import utcnow
from panel.repositories import billing as billing_repo
from panel.repositories import cancellations as cancellation_repo
from panel.repositories import ledger
from panel.repositories import wallets as wallet_repo

settings = get_settings()
logger = logging.getLogger(__name__)

REACTIVATABLE_STATUSES = (BillingStatus.UNPAID, BillingStatus.OVERDUE, BillingStatus.SUSPENDED)


class ChargeOutcome(str, enum.Enum):
    CHARGED = "charged"
    ALREADY_CHARGED = "already_charged"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NO_WALLET = "no_wallet"
    CANCELLED = "cancelled"
    NOT_DUE = "not_due"

    @property
    def is_paid(self) -> bool:
        return self in (ChargeOutcome.CHARGED, ChargeOutcome.ALREADY_CHARGED)


@dataclass
class BillingCycleSummary:
    due: int = 0
    charged: int = 0
    already_charged: int = 0
    insufficient_funds: int = 0
    marked_unpaid: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class TopupSummary:
    checked: int = 0
    credited: int = 0
    declined: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def add_month(value: datetime) -> datetime:
    """One calendar month later, clamped to the last day of the target month."""
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_idempotency_key(resource_id: str, next_charge_at: datetime) -> str:
    if next_charge_at.tzinfo is None:
        next_charge_at = next_charge_at.replace(tzinfo=timezone.utc)
    return f"bill:{resource_id}:{next_charge_at.astimezone(timezone.utc).isoformat()}"


def create_resource_billing(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    plan_id: int,
    monthly_price: int,
    now: datetime | None = None,
) -> ResourceBilling:
    """Start billing a freshly provisioned server; the first renewal is one month out."""
    now = now or utcnow()
    record = billing_repo.create(
        db,
        owner_id=owner_id,
        resource_id=resource_id,
        plan_id=plan_id,
        monthly_price=monthly_price,
        deployed_at=now,
        next_charge_at=add_month(now),
    )
    logger.info("Created billing record for server %s (owner=%s price=%s)", resource_id, owner_id, monthly_price)
    return record


def attempt_charge(db: Session, record: ResourceBilling, now: datetime) -> ChargeOutcome:
    """Charge the period starting at ``record.next_charge_at`` inside the caller's transaction.

    The caller must hold the row lock on ``record`` and commit or roll back.
    Only a paid outcome changes the record (or a completed cancellation,
    which closes it); an unpaid outcome leaves every row as it was.
    """
    if cancellation_repo.has_completed_cancellation(db, record.resource_id):
        billing_repo.mark_cancelled(record)
        logger.info("Server %s was deleted by a cancellation; billing closed", record.resource_id)
        return ChargeOutcome.CANCELLED

    period_start = record.next_charge_at
    period_end = add_month(period_start)
    key = billing_idempotency_key(record.resource_id, period_start)

    if ledger.find_by_idempotency_key(db, key):
        logger.info("Server %s already charged for %s", record.resource_id, period_start.isoformat())
        billing_repo.mark_paid(record, next_charge_at=period_end, billed_at=None)
        return ChargeOutcome.ALREADY_CHARGED

    wallet = wallet_repo.get_wallet_for_update(db, record.owner_id)
    if wallet is None or wallet.is_deleted:
        logger.warning("No active wallet for owner %s (server %s)", record.owner_id, record.resource_id)
        return ChargeOutcome.NO_WALLET

    price = int(record.monthly_price or 0)
    if price > 0:
        try:
            _, applied = wallet_repo.debit_wallet(
                db,
                wallet,
                price,
                description=f"Monthly server billing for {record.resource_id}",
                resource_id=record.resource_id,
                idempotency_key=key,
                meta={
                    "plan_id": record.plan_id,
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )
        except InsufficientFunds as exc:
            logger.info(
                "Insufficient balance for server %s: need %s, have %s",
                record.resource_id,
                exc.required,
                exc.available,
            )
            return ChargeOutcome.INSUFFICIENT_FUNDS
        if not applied:
            billing_repo.mark_paid(record, next_charge_at=period_end, billed_at=None)
            return ChargeOutcome.ALREADY_CHARGED

    billing_repo.mark_paid(record, next_charge_at=period_end, billed_at=now)
    logger.info("Charged server %s: %s (next charge %s)", record.resource_id, price, period_end.isoformat())
    return ChargeOutcome.CHARGED


def charge_resource(session_factory: sessionmaker, billing_id: int, now: datetime | None = None) -> tuple[ChargeOutcome, bool]:
    """Charge one due resource in its own transaction.

    Returns the outcome and whether the record was moved to ``unpaid``.
    """
    now = now or utcnow()
    db = session_factory()
    try:
        record = billing_repo.get_for_update(db, billing_id)
        if record is None or not billing_repo.is_due_for_charge(record, now):
            db.rollback()
            return ChargeOutcome.NOT_DUE, False

        outcome = attempt_charge(db, record, now)
        marked_unpaid = False
        if outcome == ChargeOutcome.INSUFFICIENT_FUNDS:
            marked_unpaid = billing_repo.mark_unpaid(record, now=now, grace_days=settings.unpaid_grace_days)
            if marked_unpaid:
                logger.info(
                    "Server %s marked unpaid, will suspend at %s",
                    record.resource_id,
                    record.suspend_at.isoformat(),
                )
        db.commit()
        return outcome, marked_unpaid
    except IntegrityError:
        # Another writer inserted the same idempotency key first; the period is paid.
        db.rollback()
        logger.info("Concurrent charge detected for billing record %s; leaving it to the next tick", billing_id)
        return ChargeOutcome.ALREADY_CHARGED, False
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_billing_cycle(session_factory: sessionmaker, now: datetime | None = None) -> BillingCycleSummary:
    now = now or utcnow()
    summary = BillingCycleSummary()

    db = session_factory()
    try:
        due_ids = billing_repo.due_for_charge(db, now)
    finally:
        db.close()

    summary.due = len(due_ids)
    if due_ids:
        logger.info("Found %s servers due for billing", len(due_ids))

    for billing_id in due_ids:
        try:
            outcome, marked_unpaid = charge_resource(session_factory, billing_id, now)
        except Exception:
            logger.exception("Error charging billing record %s", billing_id)
            summary.errors += 1
            continue
        if outcome == ChargeOutcome.CHARGED:
            summary.charged += 1
        elif outcome == ChargeOutcome.ALREADY_CHARGED:
            summary.already_charged += 1
        elif outcome == ChargeOutcome.INSUFFICIENT_FUNDS:
            summary.insufficient_funds += 1
        else:
            summary.skipped += 1
        if marked_unpaid:
            summary.marked_unpaid += 1

    if summary.due:
        logger.info("Billing cycle completed: %s", summary.as_dict())
    return summary


def reactivate_owner_resources(session_factory: sessionmaker, owner_id: str, hypervisor, now: datetime | None = None) -> int:
    """Retry unpaid and suspended servers for an owner after their balance went up.

    A suspended server that gets paid is unsuspended at the hypervisor.
    Returns the number of servers brought back to ``paid``.
    """
    now = now or utcnow()
    db = session_factory()
    try:
        ids = [record.id for record in billing_repo.list_for_owner(db, owner_id, REACTIVATABLE_STATUSES)]
    finally:
        db.close()

    reactivated = 0
    for billing_id in ids:
        db = session_factory()
        try:
            record = billing_repo.get_for_update(db, billing_id)
            if record is None or record.status not in REACTIVATABLE_STATUSES:
                db.rollback()
                continue
            was_suspended = record.status == BillingStatus.SUSPENDED
            resource_id = record.resource_id
            outcome = attempt_charge(db, record, now)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Error reactivating billing record %s", billing_id)
            continue
        finally:
            db.close()

        if not outcome.is_paid:
            continue
        reactivated += 1
        if was_suspended:
            try:
                hypervisor.unsuspend_server(resource_id)
            except Exception:
                logger.exception("Server %s is paid but could not be unsuspended; needs manual unsuspend", resource_id)
                continue
        logger.info("Reactivated server %s", resource_id)
    return reactivated


def auto_topup_idempotency_key(owner_id: str, latest_entry_id: int, now: datetime) -> str:
    # Stable while the wallet is unchanged on the same day, so a crash between the
    # gateway charge and the ledger credit replays the same PaymentIntent.
    return f"autotopup:{owner_id}:{latest_entry_id}:{now.astimezone(timezone.utc):%Y%m%d}"


def _auto_topup_wallet(session_factory: sessionmaker, gateway, owner_id: str, now: datetime) -> bool | None:
    """Top up one wallet. Returns True when credited, False when declined, None when skipped."""
    db = session_factory()
    try:
        wallet = wallet_repo.get_wallet(db, owner_id)
        if (
            wallet is None
            or wallet.is_deleted
            or not wallet.auto_topup_enabled
            or wallet.auto_topup_threshold is None
            or wallet.balance > wallet.auto_topup_threshold
        ):
            return None
        customer_id = wallet.payment_customer_id
        payment_method_id = wallet.auto_topup_payment_method_id
        amount = int(wallet.auto_topup_amount or 0)
        if not customer_id or not payment_method_id or amount <= 0:
            return None
        key = auto_topup_idempotency_key(owner_id, ledger.latest_entry_id(db, owner_id), now)
        # Do not hold a transaction open across the gateway call.
        db.rollback()

        result = gateway.charge(
            customer_id,
            payment_method_id,
            amount,
            settings.currency,
            idempotency_key=key,
            metadata={"auto_topup": "true", "owner_id": owner_id},
        )
        if not result.succeeded:
            logger.info("Auto top-up declined for %s: %s", owner_id, result.message or result.status)
            return False

        wallet = wallet_repo.get_wallet_for_update(db, owner_id)
        _, applied = wallet_repo.credit_wallet(
            db,
            wallet,
            amount,
            description="Auto top-up",
            entry_type=LedgerEntryType.AUTO_TOPUP,
            external_event_id=result.payment_id,
            meta={"auto_topup": True, "idempotency_key": key},
        )
        db.commit()
        if applied:
            logger.info("Auto top-up successful for %s: %s", owner_id, amount)
        return applied
    except IntegrityError:
        db.rollback()
        logger.info("Auto top-up for %s was already credited", owner_id)
        return False
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def process_auto_topups(session_factory: sessionmaker, gateway, hypervisor=None, now: datetime | None = None) -> TopupSummary:
    now = now or utcnow()
    summary = TopupSummary()

    db = session_factory()
    try:
        owner_ids = [wallet.owner_id for wallet in wallet_repo.list_wallets_needing_topup(db)]
    finally:
        db.close()

    for owner_id in owner_ids:
        summary.checked += 1
        try:
            credited = _auto_topup_wallet(session_factory, gateway, owner_id, now)
        except Exception:
            logger.exception("Auto top-up failed for %s", owner_id)
            summary.errors += 1
            continue
        if credited:
            summary.credited += 1
            if hypervisor is not None:
                reactivate_owner_resources(session_factory, owner_id, hypervisor, now)
        elif credited is False:
            summary.declined += 1

    if summary.checked:
        logger.info("Auto top-up pass completed: %s", summary.as_dict())
    return summary
