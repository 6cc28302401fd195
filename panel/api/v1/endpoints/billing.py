from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from panel.core.database import get_db
from panel.dependencies import require_admin
from panel.models import BillingStatus
from panel.repositories import billing as billing_repo
from panel.repositories import wallets as wallet_repo
from panel.schemas.billing import BillingOverview

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/{owner_id}", response_model=BillingOverview)
def get_billing_overview(owner_id: str, db: Session = Depends(get_db)):
    wallet = wallet_repo.get_wallet(db, owner_id)
    balance = wallet.balance if wallet and not wallet.is_deleted else 0
    records = [
        record
        for record in billing_repo.list_for_owner(db, owner_id)
        if record.status != BillingStatus.CANCELLED
    ]
    monthly_total = sum(record.monthly_price for record in records if record.auto_renew)
    return {
        "owner_id": owner_id,
        "balance": balance,
        "monthly_total": monthly_total,
        "shortfall": max(0, monthly_total - balance),
        "resources": records,
    }
