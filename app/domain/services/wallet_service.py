"""
Wallet Service - balances, credits/debits, payouts and bank accounts

Every balance change goes through ``apply_effect``: lock the wallet row, write
one ledger entry keyed by its idempotency key, and move the matching cached
field in the same transaction. A replayed key changes nothing.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BankAccountNotFoundError,
    ErrorCode,
    ForbiddenError,
    InsufficientFundsError,
    InvalidTransitionError,
    PayoutNotFoundError,
    ValidationException,
    WalletNotFoundError,
)
from app.core.logging import get_logger
from app.db.models.bank_account import BankAccount
from app.db.models.domain_event import EventType
from app.db.models.ledger_entry import (
    BalanceKind,
    LedgerEntryStatus,
    LedgerEntryType,
)
from app.db.models.payout_request import PayoutRequest, PayoutStatus
from app.db.models.wallet import OwnerType, Wallet
from app.domain.services.event_service import EventService
from app.domain.services.ledger_service import (
    BALANCE_FIELDS,
    EffectResult,
    LedgerService,
    ReconciliationReport,
)
from app.domain.services.pricing_service import calculate_payout_fee

logger = get_logger(__name__)

ZERO = Decimal("0.00")

_ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{6,20}$")

# Allowed payout status changes
PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def payout_reserve_key(payout_id: UUID) -> str:
    return f"payout:{payout_id}:reserve"


def payout_fee_key(payout_id: UUID) -> str:
    return f"payout:{payout_id}:platform_fee"


def redeem_key(wallet_id: UUID, idempotency_key: str, part: str) -> str:
    # מפתח הלקוח ייחודי רק בתוך הארנק שלו
    return f"redeem:{wallet_id}:{idempotency_key}:{part}"


class WalletService:
    """Service for managing wallets of customers, vendors, riders and the platform"""

    def __init__(self, db: AsyncSession, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)
        self.ledger = LedgerService(db)

    async def _finish(self, auto_commit: bool) -> None:
        if auto_commit:
            await self.db.commit()
            await self.events.publish_staged()
        else:
            await self.db.flush()

    # ==================== Wallet lookup ====================

    async def get_or_create_wallet(
        self, owner_id: UUID, owner_type: OwnerType, for_update: bool = False
    ) -> Wallet:
        """Get the owner's wallet, creating it lazily on first activity"""
        query = select(Wallet).where(Wallet.owner_id == owner_id, Wallet.owner_type == owner_type)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        wallet = result.scalar_one_or_none()
        if wallet:
            return wallet

        credit_limit = ZERO
        if owner_type == OwnerType.PLATFORM:
            credit_limit = _to_decimal(settings.PLATFORM_ESCROW_CREDIT_LIMIT)

        try:
            async with self.db.begin_nested():
                wallet = Wallet(
                    owner_id=owner_id,
                    owner_type=owner_type,
                    available_balance=ZERO,
                    bonus_balance=ZERO,
                    carbon_credits=ZERO,
                    total_spent=ZERO,
                    total_earned=ZERO,
                    credit_limit=credit_limit,
                )
                self.db.add(wallet)
        except IntegrityError:
            # נוצר במקביל - שולפים את הארנק הקיים
            result = await self.db.execute(query)
            wallet = result.scalar_one_or_none()
            if wallet is None:
                raise
            return wallet

        logger.info(
            "Wallet created",
            extra_data={"wallet_id": str(wallet.id), "owner_id": str(owner_id), "owner_type": owner_type.value},
        )
        return wallet

    async def get_platform_wallet(self, for_update: bool = False) -> Wallet:
        return await self.get_or_create_wallet(settings.PLATFORM_OWNER_ID, OwnerType.PLATFORM, for_update)

    async def get_wallet(self, wallet_id: UUID, for_update: bool = False) -> Wallet:
        query = select(Wallet).where(Wallet.id == wallet_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        wallet = result.scalar_one_or_none()
        if not wallet:
            raise WalletNotFoundError(wallet_id)
        return wallet

    async def get_wallet_by_owner(self, owner_id: UUID, owner_type: Optional[OwnerType] = None) -> Wallet:
        """getWalletBalance: the owner's wallet with its cached balances"""
        query = select(Wallet).where(Wallet.owner_id == owner_id)
        if owner_type is not None:
            query = query.where(Wallet.owner_type == owner_type)
        result = await self.db.execute(query)
        wallets = list(result.scalars().all())
        if not wallets:
            raise WalletNotFoundError(owner_id)
        if len(wallets) > 1:
            raise ValidationException(
                "Owner has more than one wallet, owner_type is required",
                field="owner_type",
                details={"owner_types": sorted(w.owner_type.value for w in wallets)},
            )
        return wallets[0]

    # ==================== Ledger effects ====================

    async def apply_effect(
        self,
        wallet_id: UUID,
        entry_type: LedgerEntryType,
        amount: Decimal,
        idempotency_key: str,
        balance_kind: BalanceKind = BalanceKind.AVAILABLE,
        status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED,
        related_order_id: Optional[UUID] = None,
        related_delivery_id: Optional[UUID] = None,
        related_payout_id: Optional[UUID] = None,
        reverses_entry_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> EffectResult:
        """
        Append one signed ledger entry and move the cached balance with it.

        Raises InsufficientFundsError if a debit would take the field below
        its floor (credit_limit for cash, zero for bonus and carbon). Does not
        commit; the caller owns the transaction.
        """
        amount = _to_decimal(amount)
        if amount == 0:
            raise ValidationException("Ledger amount must not be zero", field="amount",
                                      error_code=ErrorCode.INVALID_AMOUNT)

        existing = await self.ledger.get_by_key(idempotency_key)
        if existing is not None:
            logger.info(
                "Duplicate ledger effect ignored",
                extra_data={"idempotency_key": idempotency_key, "entry_id": str(existing.id)},
            )
            return EffectResult(entry=existing, duplicate=True)

        wallet = await self.get_wallet(wallet_id, for_update=True)
        field_name = BALANCE_FIELDS[balance_kind]
        current = _to_decimal(getattr(wallet, field_name))
        new_value = current + amount

        floor = _to_decimal(wallet.credit_limit) if balance_kind == BalanceKind.AVAILABLE else ZERO
        if amount < 0 and new_value < floor:
            logger.info(
                "Debit rejected, insufficient funds",
                extra_data={
                    "wallet_id": str(wallet_id),
                    "balance_kind": balance_kind.value,
                    "balance": str(current),
                    "amount": str(amount),
                },
            )
            raise InsufficientFundsError(wallet_id, current, -amount, floor)

        result = await self.ledger.append(
            wallet_id=wallet_id,
            entry_type=entry_type,
            amount=amount,
            idempotency_key=idempotency_key,
            balance_kind=balance_kind,
            status=status,
            balance_after=new_value,
            related_order_id=related_order_id,
            related_delivery_id=related_delivery_id,
            related_payout_id=related_payout_id,
            reverses_entry_id=reverses_entry_id,
            description=description,
        )
        if result.duplicate:
            return result

        setattr(wallet, field_name, new_value)
        wallet.updated_at = datetime.utcnow()
        await self.db.flush()

        await self.events.record(
            EventType.LEDGER_ENTRY_COMMITTED,
            {
                "entry_id": result.entry.id,
                "wallet_id": wallet_id,
                "entry_type": entry_type,
                "balance_kind": balance_kind,
                "amount": amount,
                "status": status,
                "idempotency_key": idempotency_key,
            },
            order_id=related_order_id,
            delivery_id=related_delivery_id,
        )
        return result

    async def credit(
        self,
        wallet_id: UUID,
        amount: Decimal,
        entry_type: LedgerEntryType,
        idempotency_key: str,
        balance_kind: BalanceKind = BalanceKind.AVAILABLE,
        description: Optional[str] = None,
        auto_commit: bool = True,
    ) -> EffectResult:
        """Credit a wallet; replaying the same key is a no-op"""
        amount = _to_decimal(amount)
        if amount <= 0:
            raise ValidationException("Credit amount must be positive", field="amount",
                                      error_code=ErrorCode.INVALID_AMOUNT)
        result = await self.apply_effect(
            wallet_id, entry_type, amount, idempotency_key,
            balance_kind=balance_kind, description=description,
        )
        await self._finish(auto_commit)
        return result

    async def debit(
        self,
        wallet_id: UUID,
        amount: Decimal,
        entry_type: LedgerEntryType,
        idempotency_key: str,
        balance_kind: BalanceKind = BalanceKind.AVAILABLE,
        description: Optional[str] = None,
        auto_commit: bool = True,
    ) -> EffectResult:
        """Debit a wallet; fails with InsufficientFundsError below the floor"""
        amount = _to_decimal(amount)
        if amount <= 0:
            raise ValidationException("Debit amount must be positive", field="amount",
                                      error_code=ErrorCode.INVALID_AMOUNT)
        result = await self.apply_effect(
            wallet_id, entry_type, -amount, idempotency_key,
            balance_kind=balance_kind, description=description,
        )
        await self._finish(auto_commit)
        return result

    async def adjust_totals(
        self,
        wallet_id: UUID,
        spent: Decimal = ZERO,
        earned: Decimal = ZERO,
    ) -> Wallet:
        """Move the lifetime counters; guarded by the caller's settlement event"""
        wallet = await self.get_wallet(wallet_id, for_update=True)
        wallet.total_spent = _to_decimal(wallet.total_spent) + _to_decimal(spent)
        wallet.total_earned = _to_decimal(wallet.total_earned) + _to_decimal(earned)
        await self.db.flush()
        return wallet

    async def balance(self, wallet_id: UUID) -> Decimal:
        """Cash balance derived from the ledger, not from the cache"""
        balances = await self.ledger.replay_balances(wallet_id)
        return balances[BalanceKind.AVAILABLE]

    async def reconcile(self, wallet_id: UUID) -> ReconciliationReport:
        wallet = await self.get_wallet(wallet_id)
        return await self.ledger.reconcile(wallet)

    async def reconcile_all(self) -> List[ReconciliationReport]:
        result = await self.db.execute(select(Wallet).order_by(Wallet.created_at))
        return [await self.ledger.reconcile(wallet) for wallet in result.scalars().all()]

    async def get_ledger_history(self, wallet_id: UUID, limit: int = 20) -> list:
        """Get transaction history for a wallet"""
        return await self.ledger.get_ledger_history(wallet_id, limit)

    # ==================== Carbon credits ====================

    async def redeem_carbon_credits(
        self,
        wallet_id: UUID,
        credits: Decimal,
        idempotency_key: str,
        auto_commit: bool = True,
    ) -> EffectResult:
        """
        Convert carbon credits into bonus balance at CARBON_CREDIT_VALUE each.

        Redeemed credits can no longer be reverted by a refund.
        """
        credits = _to_decimal(credits)
        if credits <= 0:
            raise ValidationException("Credits to redeem must be positive", field="credits",
                                      error_code=ErrorCode.INVALID_AMOUNT)

        debit = await self.apply_effect(
            wallet_id, LedgerEntryType.BONUS, -credits, redeem_key(wallet_id, idempotency_key, "carbon"),
            balance_kind=BalanceKind.CARBON,
            description=f"Redeemed {credits} carbon credits",
        )
        bonus = await self.apply_effect(
            wallet_id, LedgerEntryType.BONUS,
            credits * _to_decimal(settings.CARBON_CREDIT_VALUE),
            redeem_key(wallet_id, idempotency_key, "bonus"),
            balance_kind=BalanceKind.BONUS,
            description=f"Bonus for {credits} carbon credits",
        )
        await self._finish(auto_commit)
        return EffectResult(entry=bonus.entry, duplicate=debit.duplicate and bonus.duplicate)

    # ==================== Bank accounts ====================

    async def add_bank_account(
        self,
        owner_id: UUID,
        account_name: str,
        bank_name: str,
        account_number: str,
        auto_commit: bool = True,
    ) -> BankAccount:
        """Register a payout destination; the owner's first account becomes default"""
        account_number = (account_number or "").strip()
        if not _ACCOUNT_NUMBER_PATTERN.match(account_number):
            raise ValidationException("Account number must be 6-20 digits", field="account_number")
        if not (account_name or "").strip():
            raise ValidationException("Account name is required", field="account_name")
        if not (bank_name or "").strip():
            raise ValidationException("Bank name is required", field="bank_name")

        existing = await self.list_bank_accounts(owner_id)
        account = BankAccount(
            owner_id=owner_id,
            account_name=account_name.strip(),
            bank_name=bank_name.strip(),
            account_number=account_number,
            is_default=not existing,
            is_verified=False,
        )
        self.db.add(account)
        await self._finish(auto_commit)
        logger.info(
            "Bank account added",
            extra_data={"owner_id": str(owner_id), "bank_account_id": str(account.id), "is_default": account.is_default},
        )
        return account

    async def list_bank_accounts(self, owner_id: UUID) -> List[BankAccount]:
        result = await self.db.execute(
            select(BankAccount)
            .where(BankAccount.owner_id == owner_id)
            .order_by(BankAccount.is_default.desc(), BankAccount.created_at.asc())
        )
        return list(result.scalars().all())

    async def set_default_bank_account(
        self, owner_id: UUID, bank_account_id: UUID, auto_commit: bool = True
    ) -> BankAccount:
        account = await self._get_owned_bank_account(owner_id, bank_account_id)
        await self.db.execute(
            update(BankAccount)
            .where(BankAccount.owner_id == owner_id, BankAccount.id != bank_account_id)
            .values(is_default=False)
        )
        account.is_default = True
        await self._finish(auto_commit)
        return account

    async def _get_owned_bank_account(self, owner_id: UUID, bank_account_id: UUID) -> BankAccount:
        result = await self.db.execute(select(BankAccount).where(BankAccount.id == bank_account_id))
        account = result.scalar_one_or_none()
        if not account:
            raise BankAccountNotFoundError(bank_account_id)
        if account.owner_id != owner_id:
            raise ForbiddenError(
                "Bank account does not belong to the wallet owner",
                details={"bank_account_id": str(bank_account_id)},
            )
        return account

    # ==================== Payouts ====================

    async def request_withdrawal(
        self, owner_id: UUID, amount: Decimal, bank_account_id: UUID,
        owner_type: Optional[OwnerType] = None,
    ) -> PayoutRequest:
        """requestWithdrawal: payout from the owner's wallet"""
        wallet = await self.get_wallet_by_owner(owner_id, owner_type)
        return await self.request_payout(wallet.id, amount, bank_account_id)

    async def request_payout(
        self,
        wallet_id: UUID,
        amount: Decimal,
        bank_account_id: UUID,
        auto_commit: bool = True,
    ) -> PayoutRequest:
        """
        Create a payout request and reserve its amount.

        The reservation is a pending debit entry: it lowers available_balance
        now and is finalized by complete_payout or reversed by fail_payout.
        """
        amount = _to_decimal(amount)
        minimum = _to_decimal(settings.MINIMUM_PAYOUT_AMOUNT)
        if amount < minimum:
            raise ValidationException(
                f"Payout amount must be at least {minimum}",
                field="amount",
                details={"minimum_payout": str(minimum)},
                error_code=ErrorCode.BELOW_MINIMUM_PAYOUT,
            )

        wallet = await self.get_wallet(wallet_id, for_update=True)
        await self._get_owned_bank_account(wallet.owner_id, bank_account_id)

        balance = _to_decimal(wallet.available_balance)
        if balance - amount < _to_decimal(wallet.credit_limit):
            raise InsufficientFundsError(wallet_id, balance, amount, _to_decimal(wallet.credit_limit))

        fee = calculate_payout_fee(amount)
        payout = PayoutRequest(
            wallet_id=wallet_id,
            bank_account_id=bank_account_id,
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            status=PayoutStatus.PENDING,
        )
        self.db.add(payout)
        await self.db.flush()

        await self.apply_effect(
            wallet_id,
            LedgerEntryType.PAYOUT,
            -amount,
            payout_reserve_key(payout.id),
            status=LedgerEntryStatus.PENDING,
            related_payout_id=payout.id,
            description=f"Payout reservation {payout.id}",
        )
        await self.events.record(
            EventType.PAYOUT_REQUESTED,
            {"payout_id": payout.id, "wallet_id": wallet_id, "amount": amount, "fee": fee},
        )
        await self._finish(auto_commit)

        logger.info(
            "Payout requested",
            extra_data={"payout_id": str(payout.id), "wallet_id": str(wallet_id), "amount": str(amount)},
        )
        return payout

    async def get_payout(self, payout_id: UUID, for_update: bool = False) -> PayoutRequest:
        query = select(PayoutRequest).where(PayoutRequest.id == payout_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        payout = result.scalar_one_or_none()
        if not payout:
            raise PayoutNotFoundError(payout_id)
        return payout

    def _check_payout_transition(self, payout: PayoutRequest, target: PayoutStatus) -> None:
        if target not in PAYOUT_TRANSITIONS[payout.status]:
            raise InvalidTransitionError("payout", payout.status.value, target.value)

    async def mark_payout_processing(
        self, payout_id: UUID, processor_reference: Optional[str] = None, auto_commit: bool = True
    ) -> PayoutRequest:
        payout = await self.get_payout(payout_id, for_update=True)
        if payout.status == PayoutStatus.PROCESSING:
            return payout
        self._check_payout_transition(payout, PayoutStatus.PROCESSING)
        payout.status = PayoutStatus.PROCESSING
        payout.processor_reference = processor_reference or payout.processor_reference
        await self._finish(auto_commit)
        return payout

    async def complete_payout(
        self, payout_id: UUID, processor_reference: Optional[str] = None, auto_commit: bool = True
    ) -> PayoutRequest:
        """Finalize the reservation and credit the payout fee to the platform"""
        payout = await self.get_payout(payout_id, for_update=True)
        if payout.status == PayoutStatus.COMPLETED:
            logger.info("Payout already completed", extra_data={"payout_id": str(payout_id)})
            return payout
        self._check_payout_transition(payout, PayoutStatus.COMPLETED)

        reservation = await self.ledger.get_by_key(payout_reserve_key(payout.id))
        await self.ledger.set_status(reservation, LedgerEntryStatus.COMPLETED)

        if _to_decimal(payout.fee) > 0:
            platform = await self.get_platform_wallet()
            await self.apply_effect(
                platform.id,
                LedgerEntryType.FEE,
                _to_decimal(payout.fee),
                payout_fee_key(payout.id),
                related_payout_id=payout.id,
                description=f"Payout fee {payout.id}",
            )

        payout.status = PayoutStatus.COMPLETED
        payout.completed_at = datetime.utcnow()
        payout.processor_reference = processor_reference or payout.processor_reference
        await self.events.record(
            EventType.PAYOUT_COMPLETED,
            {"payout_id": payout.id, "wallet_id": payout.wallet_id, "net_amount": payout.net_amount},
        )
        await self._finish(auto_commit)

        logger.info("Payout completed", extra_data={"payout_id": str(payout_id)})
        return payout

    async def fail_payout(self, payout_id: UUID, reason: str, auto_commit: bool = True) -> PayoutRequest:
        """Reverse the reservation; the full amount returns to available_balance"""
        payout = await self.get_payout(payout_id, for_update=True)
        if payout.status == PayoutStatus.FAILED:
            logger.info("Payout already failed", extra_data={"payout_id": str(payout_id)})
            return payout
        self._check_payout_transition(payout, PayoutStatus.FAILED)

        reservation = await self.ledger.get_by_key(payout_reserve_key(payout.id))
        await self.ledger.set_status(reservation, LedgerEntryStatus.FAILED)

        wallet = await self.get_wallet(payout.wallet_id, for_update=True)
        wallet.available_balance = _to_decimal(wallet.available_balance) - _to_decimal(reservation.amount)
        wallet.updated_at = datetime.utcnow()
        await self.events.record(
            EventType.LEDGER_ENTRY_COMMITTED,
            {
                "entry_id": reservation.id,
                "wallet_id": wallet.id,
                "entry_type": reservation.entry_type,
                "balance_kind": reservation.balance_kind,
                "amount": reservation.amount,
                "status": LedgerEntryStatus.FAILED,
                "idempotency_key": reservation.idempotency_key,
                "available_balance": wallet.available_balance,
            },
        )

        payout.status = PayoutStatus.FAILED
        payout.failure_reason = reason
        await self.events.record(
            EventType.PAYOUT_FAILED,
            {"payout_id": payout.id, "wallet_id": payout.wallet_id, "reason": reason},
        )
        await self._finish(auto_commit)

        logger.warning(
            "Payout failed, reservation reversed",
            extra_data={"payout_id": str(payout_id), "reason": reason},
        )
        return payout
