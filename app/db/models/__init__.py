"""
Database Models
"""
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.wallet import Wallet, OwnerType
from app.db.models.ledger_entry import LedgerEntry, LedgerEntryType, LedgerEntryStatus, BalanceKind
from app.db.models.bank_account import BankAccount
from app.db.models.payout_request import PayoutRequest, PayoutStatus
from app.db.models.domain_event import DomainEvent, EventType, SettlementStatus

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "Delivery",
    "DeliveryStatus",
    "Wallet",
    "OwnerType",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerEntryStatus",
    "BalanceKind",
    "BankAccount",
    "PayoutRequest",
    "PayoutStatus",
    "DomainEvent",
    "EventType",
    "SettlementStatus",
]
