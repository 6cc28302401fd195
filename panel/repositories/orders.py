from sqlalchemy.orm import Session

from panel.models import PENDING_ORDER_STATUSES, DeployOrder, OrderStatus


def count_pending(db: Session, owner_id: str) -> int:
    return (
        db.query(DeployOrder)
        .filter(DeployOrder.owner_id == owner_id, DeployOrder.status.in_(PENDING_ORDER_STATUSES))
        .count()
    )


def cancel_pending_orders(db: Session, owner_id: str, *, reason: str = "Account removed") -> int:
    orders = (
        db.query(DeployOrder)
        .filter(DeployOrder.owner_id == owner_id, DeployOrder.status.in_(PENDING_ORDER_STATUSES))
        .with_for_update()
        .all()
    )
    for order in orders:
        order.status = OrderStatus.CANCELLED
        order.error_message = reason
    return len(orders)
