from datetime import datetime

from pydantic import BaseModel

from panel.models import BillingStatus


class ResourceBillingOut(BaseModel):
    resource_id: str
    plan_id: int
    monthly_price: int
    status: BillingStatus
    auto_renew: bool
    next_charge_at: datetime
    last_billed_at: datetime | None = None
    suspend_at: datetime | None = None

    class Config:
        from_attributes = True


class BillingOverview(BaseModel):
    owner_id: str
    balance: int
    monthly_total: int
    shortfall: int
    resources: list[ResourceBillingOut]
