"""
Domain Event Model - Transactional outbox for state changes and their settlement
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Uuid

from app.db.database import Base


class EventType(str, enum.Enum):
    ORDER_STATUS_CHANGED = "OrderStatusChanged"
    DELIVERY_PUBLISHED = "DeliveryPublished"
    DELIVERY_ACCEPTED = "DeliveryAccepted"
    DELIVERY_COMPLETED = "DeliveryCompleted"
    DELIVERY_EXPIRED = "DeliveryExpired"
    LEDGER_ENTRY_COMMITTED = "LedgerEntryCommitted"
    PAYOUT_REQUESTED = "PayoutRequested"
    PAYOUT_COMPLETED = "PayoutCompleted"
    PAYOUT_FAILED = "PayoutFailed"


class SettlementStatus(str, enum.Enum):
    NOT_REQUIRED = "not_required"  # informational event, nothing to settle
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"  # retries exhausted, needs an operator


class DomainEvent(Base):
    """
    Event recorded in the same transaction as the state change that caused it.

    The autoincrement id is the commit order. Events with settlement_status
    ``pending`` are picked up by the settlement coordinator until they are
    settled or run out of retries.
    """

    __tablename__ = "domain_events"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    event_type = Column(SQLEnum(EventType), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    order_id = Column(Uuid, nullable=True, index=True)
    delivery_id = Column(Uuid, nullable=True, index=True)

    settlement_status = Column(
        SQLEnum(SettlementStatus), nullable=False,
        default=SettlementStatus.NOT_REQUIRED, index=True,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    settled_at = Column(DateTime, nullable=True)
