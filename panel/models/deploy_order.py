import enum
from sqlalchemy import Column, Integer, String, Text, Index
from panel.core.database import Base
from panel.models.base import TimestampMixin, str_enum


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


PENDING_ORDER_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, OrderStatus.PROVISIONING)


class DeployOrder(Base, TimestampMixin):
    __tablename__ = "deploy_orders"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), nullable=False)
    plan_id = Column(Integer, nullable=False)
    location_code = Column(String(16), nullable=False, default="BNE")
    hostname = Column(String(255), nullable=True)
    price = Column(Integer, nullable=False)
    status = Column(str_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING_PAYMENT)
    resource_id = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)


Index("ix_deploy_orders_owner_status", DeployOrder.owner_id, DeployOrder.status)
