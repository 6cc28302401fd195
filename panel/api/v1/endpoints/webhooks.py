import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from panel.core.database import get_db
from panel.dependencies import get_hypervisor, get_session_factory
from panel.middlewares.rate_limit import limiter
from panel.services.billing import reactivate_owner_resources
from panel.services.payments import PaymentGatewayError, handle_payment_event, verify_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
@limiter.limit("60/minute")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    hypervisor=Depends(get_hypervisor),
):
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing signature")
    try:
        verify_webhook(body, signature)
    except PaymentGatewayError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc.message)
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        owner_id = handle_payment_event(db, event)
        db.commit()
    except IntegrityError:
        # Same event delivered concurrently; the other delivery credited it.
        db.rollback()
        logger.info("Duplicate Stripe event %s ignored", event.get("id"))
        return {"received": True}
    except Exception:
        db.rollback()
        raise

    if owner_id:
        background_tasks.add_task(reactivate_owner_resources, session_factory, owner_id, hypervisor)
    return {"received": True}
