"""
Wallet Model - Cached balances per owner
"""
import enum
import uuid
from decimal import Decimal
from datetime import datetime
from sqlalchemy import Column, Numeric, DateTime, Enum as SQLEnum, UniqueConstraint, Uuid

from app.db.database import Base


class OwnerType(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    RIDER = "rider"
    PLATFORM = "platform"


class Wallet(Base):
    """Current balances per owner.

    available_balance, bonus_balance and carbon_credits are a cache of the
    ledger (see LedgerService.replay_balances); they are only ever changed in
    the same transaction that appends the matching ledger entry.
    """

    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("owner_id", "owner_type", name="uq_wallets_owner"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)
    owner_type = Column(SQLEnum(OwnerType), nullable=False)

    available_balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    bonus_balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    carbon_credits = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    total_spent = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_earned = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Lowest allowed available_balance; only the platform wallet goes below zero
    credit_limit = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
