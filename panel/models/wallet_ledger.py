import enum
from sqlalchemy import Column, Integer, String, JSON, Index
from panel.core.database import Base
from panel.models.base import UTCDateTime, str_enum, utcnow


class LedgerEntryType(str, enum.Enum):
    CHARGE = "charge"
    CREDIT = "credit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    AUTO_TOPUP = "auto_topup"


class LedgerEntry(Base):
    """One immutable, signed money movement. Credits are positive, charges negative."""

    __tablename__ = "wallet_ledger"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), nullable=False)
    amount = Column(Integer, nullable=False)
    entry_type = Column(str_enum(LedgerEntryType), nullable=False)
    resource_id = Column(String(64), nullable=True)
    external_event_id = Column(String(128), unique=True, nullable=True)
    idempotency_key = Column(String(191), unique=True, nullable=True)
    description = Column(String(255), nullable=False, default="")
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


Index("ix_wallet_ledger_owner_created", LedgerEntry.owner_id, LedgerEntry.created_at)
Index("ix_wallet_ledger_resource_id", LedgerEntry.resource_id)
