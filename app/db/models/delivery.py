"""
Delivery Model - One dispatch cycle of an order
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Uuid

from app.db.database import Base


class DeliveryStatus(str, enum.Enum):
    AVAILABLE = "available"
    ACCEPTED = "accepted"
    PICKING_UP = "picking_up"
    PICKED_UP = "picked_up"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Delivery(Base):
    """Delivery record.

    rider_id is null exactly while status is ``available`` and never changes
    once set; re-dispatching an order closes this row and opens a new one
    with ``dispatch_cycle + 1``.
    """

    __tablename__ = "deliveries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    dispatch_cycle = Column(Integer, nullable=False, default=1)

    rider_id = Column(Uuid, nullable=True, index=True)
    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.AVAILABLE, index=True)

    # Frozen at publish time
    distance = Column(Numeric(8, 2), nullable=False, default=Decimal("0.00"))
    vehicle_type = Column(String(30), nullable=True)
    delivery_fee = Column(Numeric(14, 2), nullable=False)
    eco_bonus = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    estimated_pickup_time = Column(DateTime, nullable=True)
    estimated_delivery_time = Column(DateTime, nullable=True)

    # Failed hand-off code entries for this dispatch cycle
    verification_attempts = Column(Integer, nullable=False, default=0)

    cancellation_reason = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    accepted_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
