"""
Ledger Service - append-only money movement log

The ledger is the source of truth for every balance. Entries are never
updated except for the status of a pending payout reservation, and never
deleted; corrections are new compensating entries.

Idempotency: each logical effect carries a unique ``idempotency_key``. Writing
the same key twice returns the first entry with ``duplicate=True`` instead of
writing a second row. The unique constraint on the column is the final guard
for concurrent writers.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidTransitionError
from app.core.logging import get_logger
from app.db.models.delivery import Delivery
from app.db.models.ledger_entry import (
    LedgerEntry,
    LedgerEntryType,
    LedgerEntryStatus,
    BalanceKind,
)
from app.db.models.wallet import Wallet

logger = get_logger(__name__)

ZERO = Decimal("0.00")

# Which cached wallet column each balance kind maps to
BALANCE_FIELDS = {
    BalanceKind.AVAILABLE: "available_balance",
    BalanceKind.BONUS: "bonus_balance",
    BalanceKind.CARBON: "carbon_credits",
}

# Status changes allowed after insert
_ENTRY_STATUS_TRANSITIONS = {
    LedgerEntryStatus.PENDING: {LedgerEntryStatus.COMPLETED, LedgerEntryStatus.FAILED},
}


def _quantize(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass
class EffectResult:
    """Outcome of writing one ledger effect.

    ``duplicate`` is True when the idempotency key had already been applied;
    ``entry`` is then the entry written the first time.
    """
    entry: LedgerEntry
    duplicate: bool = False


@dataclass
class ReconciliationReport:
    wallet_id: UUID
    cached: Dict[str, Decimal] = field(default_factory=dict)
    replayed: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def mismatches(self) -> Dict[str, Dict[str, str]]:
        return {
            name: {"cached": str(self.cached[name]), "replayed": str(self.replayed[name])}
            for name in self.cached
            if self.cached[name] != self.replayed[name]
        }

    @property
    def consistent(self) -> bool:
        return not self.mismatches


class LedgerService:
    """Append-only access to ledger entries"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        wallet_id: UUID,
        entry_type: LedgerEntryType,
        amount: Decimal,
        idempotency_key: str,
        balance_kind: BalanceKind = BalanceKind.AVAILABLE,
        status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED,
        balance_after: Optional[Decimal] = None,
        related_order_id: Optional[UUID] = None,
        related_delivery_id: Optional[UUID] = None,
        related_payout_id: Optional[UUID] = None,
        reverses_entry_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> EffectResult:
        """
        Write one entry unless its idempotency key was already used.

        Does not touch wallet balances; WalletService does that in the same
        transaction only when ``duplicate`` is False.
        """
        existing = await self.get_by_key(idempotency_key)
        if existing is not None:
            logger.info(
                "Ledger effect already applied",
                extra_data={"idempotency_key": idempotency_key, "entry_id": str(existing.id)},
            )
            return EffectResult(entry=existing, duplicate=True)

        entry = LedgerEntry(
            wallet_id=wallet_id,
            entry_type=entry_type,
            balance_kind=balance_kind,
            amount=_quantize(amount),
            status=status,
            balance_after=balance_after,
            idempotency_key=idempotency_key,
            related_order_id=related_order_id,
            related_delivery_id=related_delivery_id,
            related_payout_id=related_payout_id,
            reverses_entry_id=reverses_entry_id,
            description=description,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except IntegrityError:
            # כתיבה מקבילה עם אותו מפתח - הראשונה מנצחת
            existing = await self.get_by_key(idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Ledger effect written concurrently, using first entry",
                extra_data={"idempotency_key": idempotency_key, "entry_id": str(existing.id)},
            )
            return EffectResult(entry=existing, duplicate=True)

        logger.info(
            "Ledger entry written",
            extra_data={
                "entry_id": str(entry.id),
                "wallet_id": str(wallet_id),
                "entry_type": entry_type.value,
                "balance_kind": balance_kind.value,
                "amount": str(entry.amount),
                "status": status.value,
                "idempotency_key": idempotency_key,
            },
        )
        return EffectResult(entry=entry, duplicate=False)

    async def set_status(self, entry: LedgerEntry, new_status: LedgerEntryStatus) -> LedgerEntry:
        """Move a pending entry to completed or failed; nothing else may change"""
        if entry.status == new_status:
            return entry
        allowed = _ENTRY_STATUS_TRANSITIONS.get(entry.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError("ledger entry", entry.status.value, new_status.value)
        entry.status = new_status
        await self.db.flush()
        logger.info(
            "Ledger entry status changed",
            extra_data={"entry_id": str(entry.id), "status": new_status.value},
        )
        return entry

    async def replay_balances(self, wallet_id: UUID) -> Dict[BalanceKind, Decimal]:
        """
        Recompute balances from the ledger alone.

        A balance is the sum of completed entries of its kind plus pending
        debits (payout reservations). Failed and cancelled entries never count.
        """
        counted = or_(
            LedgerEntry.status == LedgerEntryStatus.COMPLETED,
            and_(LedgerEntry.status == LedgerEntryStatus.PENDING, LedgerEntry.amount < 0),
        )
        result = await self.db.execute(
            select(LedgerEntry.balance_kind, func.sum(LedgerEntry.amount))
            .where(LedgerEntry.wallet_id == wallet_id, counted)
            .group_by(LedgerEntry.balance_kind)
        )
        balances = {kind: ZERO for kind in BalanceKind}
        for kind, total in result.all():
            balances[kind] = _quantize(total)
        return balances

    async def reconcile(self, wallet: Wallet) -> ReconciliationReport:
        """Compare cached wallet balances with a ledger replay"""
        replayed = await self.replay_balances(wallet.id)
        report = ReconciliationReport(wallet_id=wallet.id)
        for kind, field_name in BALANCE_FIELDS.items():
            report.cached[field_name] = _quantize(getattr(wallet, field_name))
            report.replayed[field_name] = replayed[kind]

        if not report.consistent:
            logger.error(
                "Wallet cache diverged from ledger",
                extra_data={"wallet_id": str(wallet.id), "mismatches": report.mismatches},
            )
        return report

    async def get_ledger_history(self, wallet_id: UUID, limit: int = 20) -> List[LedgerEntry]:
        """Most recent entries of a wallet first"""
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.wallet_id == wallet_id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_order_ledger(self, order_id: UUID) -> List[LedgerEntry]:
        """Every entry tied to an order or to any of its deliveries, oldest first"""
        delivery_ids = select(Delivery.id).where(Delivery.order_id == order_id)
        result = await self.db.execute(
            select(LedgerEntry)
            .where(
                or_(
                    LedgerEntry.related_order_id == order_id,
                    LedgerEntry.related_delivery_id.in_(delivery_ids),
                )
            )
            .order_by(LedgerEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_reversible_entries(self, order_id: UUID) -> List[LedgerEntry]:
        """Completed sale/bonus/fee entries of an order that a refund must compensate"""
        entries = await self.get_order_ledger(order_id)
        return [
            entry for entry in entries
            if entry.status == LedgerEntryStatus.COMPLETED
            and entry.balance_kind != BalanceKind.CARBON
            and entry.entry_type in (LedgerEntryType.SALE, LedgerEntryType.BONUS, LedgerEntryType.FEE)
        ]
