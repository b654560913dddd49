"""
Payout Request Model - Withdrawals from a wallet to a bank account
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum, Uuid

from app.db.database import Base


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutRequest(Base):
    """Withdrawal; the amount is reserved by a pending ledger entry at creation"""

    __tablename__ = "payout_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id = Column(Uuid, ForeignKey("wallets.id"), nullable=False, index=True)
    bank_account_id = Column(Uuid, ForeignKey("bank_accounts.id"), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    fee = Column(Numeric(14, 2), nullable=False)
    net_amount = Column(Numeric(14, 2), nullable=False)

    status = Column(SQLEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING, index=True)
    processor_reference = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
