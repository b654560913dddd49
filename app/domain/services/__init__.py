"""
Domain Services
"""
from app.domain.services.ledger_service import LedgerService, EffectResult, ReconciliationReport
from app.domain.services.wallet_service import WalletService
from app.domain.services.order_service import OrderService, OrderLine
from app.domain.services.dispatch_service import DispatchService, AlreadyAccepted, DeliveryFilter
from app.domain.services.settlement_service import SettlementCoordinator, SettlementResult
from app.domain.services.event_service import EventService

__all__ = [
    "LedgerService",
    "EffectResult",
    "ReconciliationReport",
    "WalletService",
    "OrderService",
    "OrderLine",
    "DispatchService",
    "AlreadyAccepted",
    "DeliveryFilter",
    "SettlementCoordinator",
    "SettlementResult",
    "EventService",
]
