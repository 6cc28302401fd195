"""Wallet repository.

``apply_entry`` is the only code path that changes ``Wallet.balance``; it keeps
the balance equal to the sum of the owner's ledger entries, rejects debits
that would overdraw, and turns replays of an idempotency key or external
event id into no-ops. None of these functions commit: the caller owns the
transaction so a debit can share it with the billing-record update.
"""
from datetime import datetime
import logging

from sqlalchemy.orm import Session

from panel.core.errors import InsufficientFunds, WalletNotFound
from panel.models import LedgerEntry, LedgerEntryType, Wallet
from panel.repositories import ledger

logger = logging.getLogger(__name__)


def get_wallet(db: Session, owner_id: str) -> Wallet | None:
    return db.query(Wallet).filter(Wallet.owner_id == owner_id).first()


def get_wallet_for_update(db: Session, owner_id: str) -> Wallet | None:
    # SELECT ... FOR UPDATE, re-reading the balance even if the row is already in the session.
    return (
        db.query(Wallet)
        .filter(Wallet.owner_id == owner_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_or_create_wallet(db: Session, owner_id: str, *, payment_customer_id: str | None = None) -> Wallet:
    wallet = get_wallet(db, owner_id)
    if not wallet:
        wallet = Wallet(owner_id=owner_id, balance=0, payment_customer_id=payment_customer_id)
        db.add(wallet)
        db.flush()
        logger.info("Created wallet for %s", owner_id)
    return wallet


def list_active_wallets(db: Session) -> list[Wallet]:
    return db.query(Wallet).filter(Wallet.deleted_at.is_(None)).order_by(Wallet.id).all()


def active_owner_ids(db: Session) -> set[str]:
    rows = db.query(Wallet.owner_id).filter(Wallet.deleted_at.is_(None)).all()
    return {row[0] for row in rows}


def list_wallets_needing_topup(db: Session) -> list[Wallet]:
    return (
        db.query(Wallet)
        .filter(
            Wallet.deleted_at.is_(None),
            Wallet.auto_topup_enabled.is_(True),
            Wallet.auto_topup_payment_method_id.isnot(None),
            Wallet.payment_customer_id.isnot(None),
            Wallet.auto_topup_amount > 0,
            Wallet.balance <= Wallet.auto_topup_threshold,
        )
        .order_by(Wallet.id)
        .all()
    )


def apply_entry(
    db: Session,
    wallet: Wallet,
    amount: int,
    entry_type: LedgerEntryType,
    *,
    description: str,
    resource_id: str | None = None,
    idempotency_key: str | None = None,
    external_event_id: str | None = None,
    meta: dict | None = None,
) -> tuple[LedgerEntry, bool]:
    """Append a ledger entry and move the balance by ``amount``.

    Returns ``(entry, applied)``; ``applied`` is False when the key was seen
    before and the existing entry is returned untouched.
    """
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise TypeError("ledger amounts are integer minor units")
    if amount == 0:
        raise ValueError("ledger amount must be non-zero")

    existing = ledger.find_existing(db, idempotency_key=idempotency_key, external_event_id=external_event_id)
    if existing:
        logger.info(
            "Ledger replay for %s ignored (idempotency_key=%s external_event_id=%s)",
            wallet.owner_id,
            idempotency_key,
            external_event_id,
        )
        return existing, False

    balance = int(wallet.balance or 0)
    if amount < 0 and balance + amount < 0:
        raise InsufficientFunds(wallet.owner_id, -amount, balance)

    wallet.balance = balance + amount
    entry = LedgerEntry(
        owner_id=wallet.owner_id,
        amount=amount,
        entry_type=entry_type,
        resource_id=resource_id,
        idempotency_key=idempotency_key,
        external_event_id=external_event_id,
        description=description[:255],
        meta=meta,
    )
    db.add(entry)
    # Surfaces a unique-key race as IntegrityError here rather than at commit.
    db.flush()
    return entry, True


def credit_wallet(
    db: Session,
    wallet: Wallet,
    amount: int,
    *,
    description: str,
    entry_type: LedgerEntryType = LedgerEntryType.CREDIT,
    **kwargs,
) -> tuple[LedgerEntry, bool]:
    if amount <= 0:
        raise ValueError("credit amount must be positive")
    return apply_entry(db, wallet, amount, entry_type, description=description, **kwargs)


def debit_wallet(
    db: Session,
    wallet: Wallet,
    amount: int,
    *,
    description: str,
    entry_type: LedgerEntryType = LedgerEntryType.CHARGE,
    **kwargs,
) -> tuple[LedgerEntry, bool]:
    if amount <= 0:
        raise ValueError("debit amount must be positive")
    return apply_entry(db, wallet, -amount, entry_type, description=description, **kwargs)


def soft_delete_wallet(db: Session, owner_id: str, now: datetime) -> Wallet:
    wallet = get_wallet_for_update(db, owner_id)
    if not wallet:
        raise WalletNotFound(f"No wallet for {owner_id}")
    if wallet.deleted_at is None:
        wallet.deleted_at = now
        wallet.auto_topup_enabled = False
    return wallet
