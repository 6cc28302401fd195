import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from panel.core.database import get_db
from panel.dependencies import get_hypervisor, get_session_factory, require_admin
from panel.models import LedgerEntryType
from panel.repositories import ledger
from panel.repositories import wallets as wallet_repo
from panel.schemas.wallet import AdjustmentRequest, AdjustmentResponse, LedgerOut, WalletOut
from panel.services.billing import reactivate_owner_resources

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/{owner_id}", response_model=WalletOut)
def get_wallet(owner_id: str, db: Session = Depends(get_db)):
    wallet = wallet_repo.get_wallet(db, owner_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return wallet


@router.get("/{owner_id}/ledger", response_model=list[LedgerOut])
def get_ledger(owner_id: str, limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return ledger.list_for_owner(db, owner_id, limit=limit)


@router.post("/{owner_id}/adjustments", response_model=AdjustmentResponse)
def adjust_wallet(
    owner_id: str,
    payload: AdjustmentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    hypervisor=Depends(get_hypervisor),
):
    if payload.amount == 0:
        raise HTTPException(status_code=400, detail="Adjustment amount must be non-zero")

    wallet = wallet_repo.get_wallet_for_update(db, owner_id)
    if not wallet or wallet.is_deleted:
        db.rollback()
        raise HTTPException(status_code=404, detail="Wallet not found")
    try:
        entry, applied = wallet_repo.apply_entry(
            db,
            wallet,
            payload.amount,
            LedgerEntryType.ADJUSTMENT,
            description=payload.description,
            idempotency_key=payload.idempotency_key,
            meta={"source": "admin"},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Adjustment with this idempotency key is in progress")
    except Exception:
        db.rollback()
        raise

    logger.info("Admin adjustment for %s: %s (applied=%s)", owner_id, payload.amount, applied)
    if applied and payload.amount > 0:
        background_tasks.add_task(reactivate_owner_resources, session_factory, owner_id, hypervisor)
    return {"applied": applied, "balance": wallet.balance, "entry": entry}
