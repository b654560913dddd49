"""
Bank Account Model - Payout destinations
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Uuid

from app.db.database import Base


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)

    account_name = Column(String(200), nullable=False)
    bank_name = Column(String(200), nullable=False)
    account_number = Column(String(20), nullable=False)

    is_default = Column(Boolean, nullable=False, default=False)
    is_verified = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
