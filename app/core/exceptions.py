"""
Custom Exception Hierarchy

Structured exceptions for consistent error handling across the application.
Contention outcomes (a lost acceptance race, a replayed idempotency key) are
NOT modelled here: they are returned as values, see
``app.domain.services.dispatch_service.AlreadyAccepted`` and
``app.domain.services.ledger_service.EffectResult``.
"""
from typing import Any
from decimal import Decimal
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_IMMUTABLE = "ERR_2002"
    REFUND_WINDOW_CLOSED = "ERR_2003"

    # Delivery errors (3xxx)
    DELIVERY_NOT_FOUND = "ERR_3001"
    DELIVERY_OUT_OF_ORDER = "ERR_3002"
    DELIVERY_VERIFICATION_FAILED = "ERR_3003"
    DELIVERY_VERIFICATION_LOCKED = "ERR_3004"

    # Wallet errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_FUNDS = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    PAYOUT_NOT_FOUND = "ERR_4004"
    BANK_ACCOUNT_NOT_FOUND = "ERR_4005"
    BELOW_MINIMUM_PAYOUT = "ERR_4006"

    # Settlement errors (5xxx)
    SETTLEMENT_FAILED = "ERR_5001"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFoundError(NotFoundException):
    def __init__(self, order_id: Any):
        super().__init__("Order", order_id, ErrorCode.ORDER_NOT_FOUND)


class DeliveryNotFoundError(NotFoundException):
    def __init__(self, delivery_id: Any):
        super().__init__("Delivery", delivery_id, ErrorCode.DELIVERY_NOT_FOUND)


class WalletNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Wallet", identifier, ErrorCode.WALLET_NOT_FOUND)


class PayoutNotFoundError(NotFoundException):
    def __init__(self, payout_id: Any):
        super().__init__("PayoutRequest", payout_id, ErrorCode.PAYOUT_NOT_FOUND)


class BankAccountNotFoundError(NotFoundException):
    def __init__(self, bank_account_id: Any):
        super().__init__("BankAccount", bank_account_id, ErrorCode.BANK_ACCOUNT_NOT_FOUND)


class ForbiddenError(AppException):
    """Raised when the acting role may not perform the operation"""

    def __init__(self, message: str, actor_role: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )
        if actor_role:
            self.details["actor_role"] = actor_role


class InvalidTransitionError(AppException):
    """Raised when a state machine edge does not exist"""

    def __init__(
        self,
        entity: str,
        current_state: str,
        target_state: str,
        reason: str | None = None,
    ):
        message = f"Invalid {entity} transition from '{current_state}' to '{target_state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "entity": entity,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class OutOfOrderError(AppException):
    """Raised when a delivery advance skips a step of the linear sequence"""

    def __init__(self, delivery_id: Any, current_status: str, target_status: str, expected_status: str | None):
        super().__init__(
            message=(
                f"Delivery {delivery_id} cannot move from '{current_status}' to "
                f"'{target_status}'; next step is '{expected_status}'"
            ),
            error_code=ErrorCode.DELIVERY_OUT_OF_ORDER,
            status_code=409,
            details={
                "delivery_id": str(delivery_id),
                "current_status": current_status,
                "target_status": target_status,
                "expected_status": expected_status,
            }
        )


class DeliveryVerificationError(AppException):
    """Raised when the rider enters a wrong hand-off code"""

    def __init__(self, delivery_id: Any, attempts_remaining: int):
        super().__init__(
            message=f"Wrong verification code for delivery {delivery_id}",
            error_code=ErrorCode.DELIVERY_VERIFICATION_FAILED,
            status_code=400,
            details={
                "delivery_id": str(delivery_id),
                "field": "verification_code",
                "attempts_remaining": attempts_remaining,
            }
        )


class DeliveryVerificationLockedError(AppException):
    """Raised once the hand-off code attempts are used up; an admin must reset them"""

    def __init__(self, delivery_id: Any, attempts: int):
        super().__init__(
            message=f"Verification attempts exhausted for delivery {delivery_id}",
            error_code=ErrorCode.DELIVERY_VERIFICATION_LOCKED,
            status_code=409,
            details={"delivery_id": str(delivery_id), "attempts": attempts}
        )


class InsufficientFundsError(AppException):
    """Raised when a debit would push a wallet below its floor"""

    def __init__(
        self,
        wallet_id: Any,
        available_balance: Decimal,
        requested_amount: Decimal,
        floor: Decimal = Decimal("0"),
    ):
        super().__init__(
            message=f"Insufficient funds in wallet {wallet_id}",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            status_code=400,
            details={
                "wallet_id": str(wallet_id),
                "available_balance": str(available_balance),
                "requested_amount": str(requested_amount),
                "floor": str(floor),
            }
        )


class SettlementError(AppException):
    """Raised when a settlement effect could not be written (storage failure)"""

    def __init__(self, event_id: int, message: str):
        super().__init__(
            message=f"Settlement of event {event_id} failed: {message}",
            error_code=ErrorCode.SETTLEMENT_FAILED,
            status_code=503,
            details={"event_id": event_id}
        )
