"""
Order Model - Customer orders and their line items
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, CheckConstraint, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from app.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class Order(Base):
    """Order record; money fields are frozen once payment_status is paid"""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("subtotal >= 0 AND delivery_fee >= 0", name="ck_orders_amounts_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid, nullable=False, index=True)
    vendor_id = Column(Uuid, nullable=False, index=True)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_reference = Column(String(100), nullable=True, unique=True)

    subtotal = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    delivery_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    carbon_credits_earned = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Pricing input kept for delivery publishing
    distance_km = Column(Numeric(8, 2), nullable=True)

    # קוד מסירה - נוצר כשהמשלוח מתפרסם, מוצג ללקוח בלבד
    verification_code = Column(String(4), nullable=True)

    cancellation_reason = Column(String(500), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.position",
    )


class OrderItem(Base):
    """Order line: total_price is always quantity × unit_price"""

    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    total_price = Column(Numeric(14, 2), nullable=False)
    carbon_impact = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    order = relationship("Order", back_populates="items")
