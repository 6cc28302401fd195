from sqlalchemy import func
from sqlalchemy.orm import Session

from panel.models import LedgerEntry


def find_by_idempotency_key(db: Session, idempotency_key: str) -> LedgerEntry | None:
    return db.query(LedgerEntry).filter(LedgerEntry.idempotency_key == idempotency_key).first()


def find_by_external_event(db: Session, external_event_id: str) -> LedgerEntry | None:
    return db.query(LedgerEntry).filter(LedgerEntry.external_event_id == external_event_id).first()


def find_existing(db: Session, *, idempotency_key: str | None, external_event_id: str | None) -> LedgerEntry | None:
    if idempotency_key:
        entry = find_by_idempotency_key(db, idempotency_key)
        if entry:
            return entry
    if external_event_id:
        return find_by_external_event(db, external_event_id)
    return None


def list_for_owner(db: Session, owner_id: str, *, limit: int | None = 50) -> list[LedgerEntry]:
    query = db.query(LedgerEntry).filter(LedgerEntry.owner_id == owner_id).order_by(LedgerEntry.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_for_resource(db: Session, resource_id: str) -> list[LedgerEntry]:
    return db.query(LedgerEntry).filter(LedgerEntry.resource_id == resource_id).order_by(LedgerEntry.id).all()


def latest_entry_id(db: Session, owner_id: str) -> int:
    value = db.query(func.max(LedgerEntry.id)).filter(LedgerEntry.owner_id == owner_id).scalar()
    return int(value or 0)


def balance_from_entries(db: Session, owner_id: str) -> int:
    value = (
        db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.owner_id == owner_id)
        .scalar()
    )
    return int(value or 0)
