from sqlalchemy import Column, Integer, String, Boolean, Index
from panel.core.database import Base
from panel.models.base import TimestampMixin, UTCDateTime


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), unique=True, nullable=False)
    # Minor currency units. Only panel.repositories.wallets.apply_entry writes it.
    balance = Column(Integer, default=0, nullable=False)
    payment_customer_id = Column(String(64), unique=True, nullable=True)
    hypervisor_user_id = Column(Integer, nullable=True)

    auto_topup_enabled = Column(Boolean, default=False, nullable=False)
    auto_topup_threshold = Column(Integer, nullable=True)
    auto_topup_amount = Column(Integer, nullable=True)
    auto_topup_payment_method_id = Column(String(64), nullable=True)

    deleted_at = Column(UTCDateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


Index("ix_wallets_owner_id", Wallet.owner_id)
Index("ix_wallets_deleted_at", Wallet.deleted_at)
