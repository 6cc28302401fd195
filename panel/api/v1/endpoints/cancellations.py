from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from panel.core.database import get_db
from panel.dependencies import require_admin
from panel.repositories import cancellations as cancellation_repo
from panel.schemas.cancellation import CancellationCreate, CancellationOut
from panel.services.cancellation import request_cancellation, revoke_cancellation

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("", response_model=CancellationOut, status_code=201)
def create_cancellation(payload: CancellationCreate, db: Session = Depends(get_db)):
    try:
        return request_cancellation(
            db,
            owner_id=payload.owner_id,
            resource_id=payload.resource_id,
            mode=payload.mode,
            reason=payload.reason,
        )
    except IntegrityError:
        # Lost a race on the one-pending-per-server index.
        raise HTTPException(status_code=409, detail="Server already has a pending cancellation request")


@router.delete("/{request_id}", response_model=CancellationOut)
def delete_cancellation(request_id: int, db: Session = Depends(get_db)):
    return revoke_cancellation(db, request_id)


@router.get("", response_model=list[CancellationOut])
def list_cancellations(owner_id: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return cancellation_repo.list_for_owner(db, owner_id)
