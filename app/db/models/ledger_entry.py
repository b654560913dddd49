"""
Ledger Entry Model - Append-only money movement log
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, String, Numeric, Enum as SQLEnum, Uuid

from app.db.database import Base


class LedgerEntryType(str, enum.Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    BONUS = "bonus"
    PAYOUT = "payout"
    SALE = "sale"
    FEE = "fee"


class LedgerEntryStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BalanceKind(str, enum.Enum):
    """Which cached wallet field an entry moves"""
    AVAILABLE = "available"
    BONUS = "bonus"
    CARBON = "carbon"


class LedgerEntry(Base):
    """Immutable money movement.

    Only ``status`` may change after insert (pending → completed/failed, for
    payout reservations). Corrections are new compensating entries.
    """

    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id = Column(Uuid, ForeignKey("wallets.id"), nullable=False, index=True)

    entry_type = Column(SQLEnum(LedgerEntryType), nullable=False)
    balance_kind = Column(SQLEnum(BalanceKind), nullable=False, default=BalanceKind.AVAILABLE)
    amount = Column(Numeric(14, 2), nullable=False)  # Positive for credit, negative for debit
    status = Column(SQLEnum(LedgerEntryStatus), nullable=False, default=LedgerEntryStatus.COMPLETED, index=True)
    balance_after = Column(Numeric(14, 2), nullable=True)  # Cached field value right after this entry

    # One logical effect, one row; duplicates are rejected by the database
    idempotency_key = Column(String(200), nullable=False, unique=True)

    related_order_id = Column(Uuid, nullable=True, index=True)
    related_delivery_id = Column(Uuid, nullable=True, index=True)
    related_payout_id = Column(Uuid, nullable=True, index=True)
    # Entry this one compensates (refunds)
    reverses_entry_id = Column(Uuid, ForeignKey("ledger_entries.id"), nullable=True)

    description = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
