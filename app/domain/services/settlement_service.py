"""
Settlement Coordinator - turns committed transitions into ledger effects

A transition that moves money leaves a ``domain_events`` row with
settlement_status ``pending``. ``settle`` applies all ledger effects of that
event and flips it to ``settled`` in ONE transaction:

1. every effect is written through WalletService.apply_effect with its own
   idempotency key, so a replay writes nothing new;
2. the event row is flipped with a conditional UPDATE (pending → settled);
   zero matched rows means another worker settled it first, and the whole
   transaction is rolled back;
3. any failure rolls everything back, the event stays pending with
   retry_count/next_retry_at/last_error, and becomes ``failed`` once
   SETTLEMENT_MAX_RETRIES is reached.

Events are processed in id order, which is commit order.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException, SettlementError
from app.core.logging import get_logger
from app.db.models.delivery import Delivery
from app.db.models.domain_event import DomainEvent, EventType, SettlementStatus
from app.db.models.ledger_entry import BalanceKind, LedgerEntryType
from app.db.models.order import Order, OrderStatus
from app.db.models.wallet import OwnerType
from app.domain.services.event_service import EventService
from app.domain.services.ledger_service import LedgerService
from app.domain.services.pricing_service import calculate_commission
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

ZERO = Decimal("0.00")

ORDER_PAID = "order_paid"
ORDER_REFUNDED = "order_refunded"
DELIVERY_COMPLETED = "delivery_completed"


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound:
        backoff = base_seconds * (2 ** retry_count), capped at max_backoff_seconds

    Avoids computing huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) בלי לחשב את החזקה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def settlement_kind(event: DomainEvent) -> Optional[str]:
    """Which ledger effect an event stands for"""
    if event.event_type == EventType.DELIVERY_COMPLETED:
        return DELIVERY_COMPLETED
    if event.event_type == EventType.ORDER_STATUS_CHANGED:
        to_status = (event.payload or {}).get("to_status")
        if to_status == OrderStatus.PROCESSING.value:
            return ORDER_PAID
        if to_status == OrderStatus.REFUNDED.value:
            return ORDER_REFUNDED
    return None


@dataclass
class SettlementResult:
    event_id: int
    status: SettlementStatus
    duplicate: bool = False
    entries_written: int = 0
    error: Optional[str] = None


class SettlementCoordinator:
    """Applies the ledger effects of pending domain events"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventService(db)
        self.wallets = WalletService(db, events=self.events)
        self.ledger = LedgerService(db)
        self._written = 0

    async def _get_event(self, event_id: int) -> Optional[DomainEvent]:
        result = await self.db.execute(
            select(DomainEvent).where(DomainEvent.id == event_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _effect(self, *args, **kwargs) -> None:
        result = await self.wallets.apply_effect(*args, **kwargs)
        if not result.duplicate:
            self._written += 1

    # ==================== Effects ====================

    async def _settle_order_paid(self, order: Order) -> None:
        """Vendor sale net of commission, platform commission, customer carbon credits"""
        total = Decimal(str(order.total_amount))
        commission = calculate_commission(order.subtotal)
        vendor = await self.wallets.get_or_create_wallet(order.vendor_id, OwnerType.VENDOR)
        customer = await self.wallets.get_or_create_wallet(order.customer_id, OwnerType.CUSTOMER)
        platform = await self.wallets.get_platform_wallet()

        vendor_share = total - commission
        if vendor_share > 0:
            await self._effect(
                vendor.id, LedgerEntryType.SALE, vendor_share, f"order:{order.id}:vendor_sale",
                related_order_id=order.id, description=f"Sale for order {order.id}",
            )
        if commission > 0:
            await self._effect(
                platform.id, LedgerEntryType.FEE, commission, f"order:{order.id}:platform_commission",
                related_order_id=order.id, description=f"Commission for order {order.id}",
            )
        carbon = Decimal(str(order.carbon_credits_earned or 0))
        if carbon > 0:
            await self._effect(
                customer.id, LedgerEntryType.BONUS, carbon, f"order:{order.id}:customer_carbon",
                balance_kind=BalanceKind.CARBON, related_order_id=order.id,
                description=f"Carbon credits for order {order.id}",
            )

        await self.wallets.adjust_totals(customer.id, spent=total)
        await self.wallets.adjust_totals(vendor.id, earned=vendor_share)

    async def _settle_delivery_completed(self, delivery: Delivery) -> None:
        """Rider fee and eco bonus, fronted by the platform escrow"""
        fee = Decimal(str(delivery.delivery_fee))
        eco_bonus = Decimal(str(delivery.eco_bonus or 0))
        rider = await self.wallets.get_or_create_wallet(delivery.rider_id, OwnerType.RIDER)
        platform = await self.wallets.get_platform_wallet()

        if fee > 0:
            await self._effect(
                rider.id, LedgerEntryType.SALE, fee, f"delivery:{delivery.id}:rider_credit",
                related_order_id=delivery.order_id, related_delivery_id=delivery.id,
                description=f"Delivery fee {delivery.id}",
            )
        if eco_bonus > 0:
            await self._effect(
                rider.id, LedgerEntryType.BONUS, eco_bonus, f"delivery:{delivery.id}:rider_eco_bonus",
                related_order_id=delivery.order_id, related_delivery_id=delivery.id,
                description=f"Eco bonus {delivery.id}",
            )
        if fee + eco_bonus > 0:
            await self._effect(
                platform.id, LedgerEntryType.FEE, -(fee + eco_bonus), f"delivery:{delivery.id}:platform_escrow",
                related_order_id=delivery.order_id, related_delivery_id=delivery.id,
                description=f"Rider payout escrow {delivery.id}",
            )
        await self.wallets.adjust_totals(rider.id, earned=fee + eco_bonus)

    async def _order_paid_settled(self, order_id: UUID) -> bool:
        result = await self.db.execute(
            select(DomainEvent).where(
                DomainEvent.order_id == order_id,
                DomainEvent.event_type == EventType.ORDER_STATUS_CHANGED,
                DomainEvent.settlement_status == SettlementStatus.SETTLED,
            )
        )
        return any(settlement_kind(event) == ORDER_PAID for event in result.scalars().all())

    async def _settle_order_refunded(self, order: Order) -> None:
        """
        Compensate every completed sale/bonus/fee entry of the order.

        Originals stay untouched; each gets a refund entry with the negated
        amount on the same wallet. Carbon credits are reverted only up to what
        the customer still holds (redeemed credits are gone).
        """
        for original in await self.ledger.get_reversible_entries(order.id):
            amount = Decimal(str(original.amount))
            await self._effect(
                original.wallet_id, LedgerEntryType.REFUND, -amount,
                f"refund:{original.id}",
                related_order_id=order.id,
                related_delivery_id=original.related_delivery_id,
                reverses_entry_id=original.id,
                description=f"Refund of {original.entry_type.value} for order {order.id}",
            )
            if original.entry_type in (LedgerEntryType.SALE, LedgerEntryType.BONUS):
                await self.wallets.adjust_totals(original.wallet_id, earned=-amount)

        if not await self._order_paid_settled(order.id):
            return

        customer = await self.wallets.get_or_create_wallet(order.customer_id, OwnerType.CUSTOMER, for_update=True)
        granted = await self.ledger.get_by_key(f"order:{order.id}:customer_carbon")
        if granted is not None:
            reversible = min(Decimal(str(granted.amount)), Decimal(str(customer.carbon_credits)))
            if reversible > 0:
                await self._effect(
                    customer.id, LedgerEntryType.REFUND, -reversible, f"order:{order.id}:carbon_reversal",
                    balance_kind=BalanceKind.CARBON, related_order_id=order.id,
                    description=f"Carbon credits reverted for order {order.id}",
                )
        await self.wallets.adjust_totals(customer.id, spent=-Decimal(str(order.total_amount)))

    async def _blocking_event_id(self, event: DomainEvent) -> Optional[int]:
        """An earlier unsettled event of the same order must settle first"""
        if event.order_id is None:
            return None
        result = await self.db.execute(
            select(DomainEvent.id)
            .where(
                DomainEvent.order_id == event.order_id,
                DomainEvent.id < event.id,
                DomainEvent.settlement_status.in_([SettlementStatus.PENDING, SettlementStatus.FAILED]),
            )
            .order_by(DomainEvent.id.asc())
        )
        return result.scalars().first()

    async def _apply(self, event: DomainEvent, kind: str) -> None:
        if kind == DELIVERY_COMPLETED:
            result = await self.db.execute(select(Delivery).where(Delivery.id == event.delivery_id))
            delivery = result.scalar_one()
            await self._settle_delivery_completed(delivery)
            return

        result = await self.db.execute(select(Order).where(Order.id == event.order_id))
        order = result.scalar_one()
        if kind == ORDER_PAID:
            await self._settle_order_paid(order)
        elif kind == ORDER_REFUNDED:
            await self._settle_order_refunded(order)

    # ==================== Coordinator ====================

    async def settle(self, event_id: int) -> SettlementResult:
        """
        Apply the ledger effects of one event as a single atomic unit.

        Ledger failures (e.g. InsufficientFundsError) are recorded on the
        event and re-raised; storage failures are re-raised as SettlementError.
        """
        event = await self._get_event(event_id)
        if event is None:
            raise SettlementError(event_id, "event not found")
        if event.settlement_status != SettlementStatus.PENDING:
            await self.db.commit()
            logger.info(
                "Settlement skipped, event not pending",
                extra_data={"event_id": event_id, "settlement_status": event.settlement_status.value},
            )
            return SettlementResult(event_id, event.settlement_status, duplicate=True)

        blocking = await self._blocking_event_id(event)
        if blocking is not None:
            await self.db.commit()
            logger.info(
                "Settlement deferred until an earlier event of the order settles",
                extra_data={"event_id": event_id, "blocking_event_id": blocking},
            )
            return SettlementResult(event_id, SettlementStatus.PENDING, error=f"waiting for event {blocking}")

        kind = settlement_kind(event)
        self._written = 0
        try:
            if kind is not None:
                await self._apply(event, kind)
            flipped = await self.db.execute(
                update(DomainEvent)
                .where(DomainEvent.id == event_id, DomainEvent.settlement_status == SettlementStatus.PENDING)
                .values(settlement_status=SettlementStatus.SETTLED, settled_at=datetime.utcnow(), last_error=None)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                await self.db.rollback()
                self.events.discard_staged()
                logger.info("Settlement already done by another worker", extra_data={"event_id": event_id})
                return SettlementResult(event_id, SettlementStatus.SETTLED, duplicate=True)
            await self.db.commit()
        except AppException as e:
            await self._record_failure(event_id, e.message)
            raise
        except SQLAlchemyError as e:
            await self._record_failure(event_id, str(e))
            raise SettlementError(event_id, str(e)) from e

        await self.events.publish_staged()
        logger.info(
            "Event settled",
            extra_data={"event_id": event_id, "kind": kind, "entries_written": self._written},
        )
        return SettlementResult(event_id, SettlementStatus.SETTLED, entries_written=self._written)

    async def _record_failure(self, event_id: int, error: str) -> None:
        """Roll back the effect and schedule a retry on the event row"""
        await self.db.rollback()
        self.events.discard_staged()

        event = await self._get_event(event_id)
        retry_count = (event.retry_count or 0) + 1
        values = {"retry_count": retry_count, "last_error": error[:1000]}
        if retry_count >= settings.SETTLEMENT_MAX_RETRIES:
            values["settlement_status"] = SettlementStatus.FAILED
            values["next_retry_at"] = None
        else:
            backoff = _calculate_backoff_seconds(
                retry_count,
                base_seconds=settings.SETTLEMENT_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.SETTLEMENT_MAX_BACKOFF_SECONDS,
            )
            values["next_retry_at"] = datetime.utcnow() + timedelta(seconds=backoff)

        await self.db.execute(
            update(DomainEvent)
            .where(DomainEvent.id == event_id, DomainEvent.settlement_status == SettlementStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.error(
            "Settlement attempt failed",
            extra_data={
                "event_id": event_id,
                "retry_count": retry_count,
                "settlement_status": values.get("settlement_status", SettlementStatus.PENDING).value,
                "error": error,
            },
            exc_info=True,
        )

    async def settle_pending(self, limit: int = 100) -> List[SettlementResult]:
        """Settle due events in commit order; one failure does not stop the batch"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(DomainEvent.id)
            .where(
                DomainEvent.settlement_status == SettlementStatus.PENDING,
                (DomainEvent.next_retry_at.is_(None)) | (DomainEvent.next_retry_at <= now),
            )
            .order_by(DomainEvent.id.asc())
            .limit(limit)
        )
        event_ids = list(result.scalars().all())
        await self.db.commit()

        results = []
        for event_id in event_ids:
            try:
                results.append(await self.settle(event_id))
            except AppException as e:
                # כבר נרשם על האירוע - ננסה שוב אחרי backoff
                results.append(SettlementResult(event_id, SettlementStatus.PENDING, error=e.message))
        return results

    async def settle_for_order(self, order_id: UUID) -> List[SettlementResult]:
        """Retry any pending settlement of one order inline"""
        result = await self.db.execute(
            select(DomainEvent.id)
            .where(DomainEvent.order_id == order_id, DomainEvent.settlement_status == SettlementStatus.PENDING)
            .order_by(DomainEvent.id.asc())
        )
        event_ids = list(result.scalars().all())
        return [await self.settle(event_id) for event_id in event_ids]
