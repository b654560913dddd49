"""
Wallet API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import ensure_owner_or_admin, get_current_actor, require_roles
from app.core.auth import Actor, ActorRole
from app.db.database import get_db
from app.db.models.ledger_entry import BalanceKind, LedgerEntryStatus, LedgerEntryType
from app.db.models.payout_request import PayoutStatus
from app.db.models.wallet import OwnerType
from app.domain.services.wallet_service import WalletService

router = APIRouter()


class WalletResponse(BaseModel):
    id: UUID
    owner_id: UUID
    owner_type: OwnerType
    available_balance: Decimal
    bonus_balance: Decimal
    carbon_credits: Decimal
    total_spent: Decimal
    total_earned: Decimal
    credit_limit: Decimal

    model_config = {"from_attributes": True}


class LedgerEntryResponse(BaseModel):
    id: UUID
    entry_type: LedgerEntryType
    balance_kind: BalanceKind
    amount: Decimal
    status: LedgerEntryStatus
    balance_after: Optional[Decimal] = None
    related_order_id: Optional[UUID] = None
    related_delivery_id: Optional[UUID] = None
    related_payout_id: Optional[UUID] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    bank_account_id: UUID
    owner_type: Optional[OwnerType] = None


class PayoutResponse(BaseModel):
    id: UUID
    wallet_id: UUID
    bank_account_id: UUID
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    status: PayoutStatus
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BankAccountCreate(BaseModel):
    account_name: str = Field(..., min_length=1, max_length=200)
    bank_name: str = Field(..., min_length=1, max_length=200)
    account_number: str = Field(..., min_length=6, max_length=20)


class BankAccountResponse(BaseModel):
    id: UUID
    owner_id: UUID
    account_name: str
    bank_name: str
    account_number: str
    is_default: bool
    is_verified: bool

    model_config = {"from_attributes": True}


class CarbonRedemptionRequest(BaseModel):
    credits: Decimal = Field(..., gt=0)
    idempotency_key: str = Field(..., min_length=1, max_length=100)
    owner_type: Optional[OwnerType] = None


class ReconciliationResponse(BaseModel):
    wallet_id: UUID
    consistent: bool
    mismatches: Dict[str, Dict[str, str]]


@router.get(
    "/{owner_id}",
    response_model=WalletResponse,
    summary="Get wallet balance",
    description="Cached balances of the owner's wallet. Owners with several wallets pass owner_type.",
)
async def get_wallet(
    owner_id: UUID,
    owner_type: Optional[OwnerType] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    ensure_owner_or_admin(actor, owner_id)
    wallet = await WalletService(db).get_wallet_by_owner(owner_id, owner_type)
    return WalletResponse.model_validate(wallet)


@router.get(
    "/{owner_id}/history",
    response_model=List[LedgerEntryResponse],
    summary="Ledger history",
    description="Ledger entries of the owner's wallet, newest first.",
)
async def get_transaction_history(
    owner_id: UUID,
    owner_type: Optional[OwnerType] = None,
    limit: int = Query(20, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[LedgerEntryResponse]:
    ensure_owner_or_admin(actor, owner_id)
    service = WalletService(db)
    wallet = await service.get_wallet_by_owner(owner_id, owner_type)
    history = await service.get_ledger_history(wallet.id, limit)
    return [LedgerEntryResponse.model_validate(entry) for entry in history]


@router.post(
    "/{owner_id}/withdrawals",
    response_model=PayoutResponse,
    status_code=201,
    summary="Request a withdrawal",
    description="Reserves the amount and creates a pending payout to one of the owner's bank accounts.",
    responses={400: {"description": "Below minimum payout or insufficient funds"}},
)
async def request_withdrawal(
    owner_id: UUID,
    data: WithdrawalRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    ensure_owner_or_admin(actor, owner_id)
    payout = await WalletService(db).request_withdrawal(
        owner_id, data.amount, data.bank_account_id, owner_type=data.owner_type,
    )
    return PayoutResponse.model_validate(payout)


@router.post(
    "/{owner_id}/bank-accounts",
    response_model=BankAccountResponse,
    status_code=201,
    summary="Add a bank account",
)
async def add_bank_account(
    owner_id: UUID,
    data: BankAccountCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> BankAccountResponse:
    ensure_owner_or_admin(actor, owner_id)
    account = await WalletService(db).add_bank_account(
        owner_id, data.account_name, data.bank_name, data.account_number,
    )
    return BankAccountResponse.model_validate(account)


@router.get(
    "/{owner_id}/bank-accounts",
    response_model=List[BankAccountResponse],
    summary="List bank accounts",
)
async def list_bank_accounts(
    owner_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[BankAccountResponse]:
    ensure_owner_or_admin(actor, owner_id)
    accounts = await WalletService(db).list_bank_accounts(owner_id)
    return [BankAccountResponse.model_validate(a) for a in accounts]


@router.post(
    "/{owner_id}/bank-accounts/{bank_account_id}/default",
    response_model=BankAccountResponse,
    summary="Make a bank account the default payout destination",
)
async def set_default_bank_account(
    owner_id: UUID,
    bank_account_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> BankAccountResponse:
    ensure_owner_or_admin(actor, owner_id)
    account = await WalletService(db).set_default_bank_account(owner_id, bank_account_id)
    return BankAccountResponse.model_validate(account)


@router.post(
    "/{owner_id}/carbon/redeem",
    response_model=WalletResponse,
    summary="Redeem carbon credits",
    description="Converts carbon credits into bonus balance. Replaying the same idempotency_key changes nothing.",
)
async def redeem_carbon_credits(
    owner_id: UUID,
    data: CarbonRedemptionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    ensure_owner_or_admin(actor, owner_id)
    service = WalletService(db)
    wallet = await service.get_wallet_by_owner(owner_id, data.owner_type)
    await service.redeem_carbon_credits(wallet.id, data.credits, data.idempotency_key)
    wallet = await service.get_wallet(wallet.id, for_update=True)
    return WalletResponse.model_validate(wallet)


@router.get(
    "/{wallet_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Reconcile a wallet against its ledger",
    description="Replays the ledger and compares it with the cached balances (admin only).",
)
async def reconcile_wallet(
    wallet_id: UUID,
    actor: Actor = Depends(require_roles(ActorRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> ReconciliationResponse:
    report = await WalletService(db).reconcile(wallet_id)
    return ReconciliationResponse(
        wallet_id=report.wallet_id,
        consistent=report.consistent,
        mismatches=report.mismatches,
    )
