from fastapi import APIRouter
from panel.api.v1.endpoints import billing, cancellations, wallets, webhooks

router = APIRouter()

router.include_router(cancellations.router, prefix="/cancellations", tags=["cancellations"])
router.include_router(wallets.router, prefix="/wallets", tags=["wallets"])
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
