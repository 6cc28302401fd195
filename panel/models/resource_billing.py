import enum
from sqlalchemy import Column, Integer, String, Boolean, Index
from panel.core.database import Base
from panel.models.base import TimestampMixin, UTCDateTime, str_enum


class BillingStatus(str, enum.Enum):
    ACTIVE = "active"
    PAID = "paid"
    UNPAID = "unpaid"
    OVERDUE = "overdue"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


CHARGEABLE_STATUSES = (BillingStatus.ACTIVE, BillingStatus.PAID, BillingStatus.UNPAID)
# "overdue" rows were written by the daily-rate processor and are escalated like "unpaid".
AWAITING_SUSPENSION_STATUSES = (BillingStatus.UNPAID, BillingStatus.OVERDUE)


class ResourceBilling(Base, TimestampMixin):
    __tablename__ = "resource_billing"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), nullable=False)
    resource_id = Column(String(64), unique=True, nullable=False)
    plan_id = Column(Integer, nullable=False)
    monthly_price = Column(Integer, nullable=False)
    status = Column(str_enum(BillingStatus), nullable=False, default=BillingStatus.ACTIVE)
    deployed_at = Column(UTCDateTime, nullable=True)
    last_billed_at = Column(UTCDateTime, nullable=True)
    next_charge_at = Column(UTCDateTime, nullable=False)
    suspend_at = Column(UTCDateTime, nullable=True)
    overdue_since = Column(UTCDateTime, nullable=True)
    auto_renew = Column(Boolean, default=True, nullable=False)


Index("ix_resource_billing_owner_id", ResourceBilling.owner_id)
Index("ix_resource_billing_status_next_charge", ResourceBilling.status, ResourceBilling.next_charge_at)
Index("ix_resource_billing_status_suspend_at", ResourceBilling.status, ResourceBilling.suspend_at)
