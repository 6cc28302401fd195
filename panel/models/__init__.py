from panel.models.wallet import Wallet
from panel.models.wallet_ledger import LedgerEntry, LedgerEntryType
from panel.models.resource_billing import (
    AWAITING_SUSPENSION_STATUSES,
    CHARGEABLE_STATUSES,
    BillingStatus,
    ResourceBilling,
)
from panel.models.cancellation_request import (
    CancellationMode,
    CancellationRequest,
    CancellationStatus,
)
from panel.models.deploy_order import PENDING_ORDER_STATUSES, DeployOrder, OrderStatus

__all__ = [
    "Wallet",
    "LedgerEntry",
    "LedgerEntryType",
    "ResourceBilling",
    "BillingStatus",
    "CHARGEABLE_STATUSES",
    "AWAITING_SUSPENSION_STATUSES",
    "CancellationRequest",
    "CancellationMode",
    "CancellationStatus",
    "DeployOrder",
    "OrderStatus",
    "PENDING_ORDER_STATUSES",
]
