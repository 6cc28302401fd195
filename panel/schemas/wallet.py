from datetime import datetime

from pydantic import BaseModel, Field

from panel.models import LedgerEntryType


class WalletOut(BaseModel):
    owner_id: str
    balance: int
    auto_topup_enabled: bool
    auto_topup_threshold: int | None = None
    auto_topup_amount: int | None = None
    deleted_at: datetime | None = None

    class Config:
        from_attributes = True


class LedgerOut(BaseModel):
    id: int
    amount: int
    entry_type: LedgerEntryType
    resource_id: str | None = None
    description: str
    created_at: datetime

    class Config:
        from_attributes = True


class AdjustmentRequest(BaseModel):
    # Signed minor units: positive credits, negative debits.
    amount: int
    idempotency_key: str = Field(min_length=1, max_length=191)
    description: str = Field(default="Manual adjustment", max_length=255)


class AdjustmentResponse(BaseModel):
    applied: bool
    balance: int
    entry: LedgerOut
