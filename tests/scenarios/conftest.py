"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שליפה טרייה של הזמנה, משלוח וארנק
- פונקציות אימות לרשומות ledger ולאירועי סליקה
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.delivery import Delivery
from app.db.models.domain_event import DomainEvent, EventType, SettlementStatus
from app.db.models.ledger_entry import LedgerEntry, LedgerEntryType
from app.db.models.order import Order


async def fetch_order(db: AsyncSession, order_id) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def fetch_delivery(db: AsyncSession, delivery_id) -> Delivery:
    result = await db.execute(
        select(Delivery).where(Delivery.id == delivery_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def entry_by_key(db: AsyncSession, idempotency_key: str) -> Optional[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count_entries(db: AsyncSession, entry_type: Optional[LedgerEntryType] = None, **filters) -> int:
    query = select(LedgerEntry)
    if entry_type is not None:
        query = query.where(LedgerEntry.entry_type == entry_type)
    for column, value in filters.items():
        query = query.where(getattr(LedgerEntry, column) == value)
    result = await db.execute(query)
    return len(result.scalars().all())


async def settlement_events(db: AsyncSession, order_id, event_type: Optional[EventType] = None) -> list:
    """Events of an order that carried a settlement, oldest first"""
    query = (
        select(DomainEvent)
        .where(
            DomainEvent.order_id == order_id,
            DomainEvent.settlement_status != SettlementStatus.NOT_REQUIRED,
        )
        .order_by(DomainEvent.id.asc())
        .execution_options(populate_existing=True)
    )
    if event_type is not None:
        query = query.where(DomainEvent.event_type == event_type)
    result = await db.execute(query)
    return list(result.scalars().all())


def assert_money(actual, expected) -> None:
    """השוואת סכומים כ-Decimal בשתי ספרות"""
    assert Decimal(str(actual)).quantize(Decimal("0.01")) == Decimal(str(expected)).quantize(Decimal("0.01")), (
        f"expected {expected}, got {actual}"
    )
