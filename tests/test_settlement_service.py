"""
Unit tests for SettlementCoordinator.

Failure recording with backoff, the retry ceiling, per-order ordering of
events and the pending sweep.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from app.core.config import settings
from app.core.exceptions import InsufficientFundsError, SettlementError
from app.db.models.domain_event import DomainEvent, EventType, SettlementStatus
from app.db.models.order import OrderStatus
from app.db.models.wallet import OwnerType
from app.domain.services.event_service import EventService
from app.domain.services.order_service import OrderService
from app.domain.services.settlement_service import (
    DELIVERY_COMPLETED,
    ORDER_PAID,
    ORDER_REFUNDED,
    SettlementCoordinator,
    _calculate_backoff_seconds,
    settlement_kind,
)
from app.domain.services.wallet_service import WalletService

from tests.conftest import available, platform_available
from tests.scenarios.conftest import assert_money, fetch_order


async def _pending_refund_event(db_session, order_id) -> DomainEvent:
    result = await db_session.execute(
        select(DomainEvent)
        .where(DomainEvent.order_id == order_id, DomainEvent.settlement_status != SettlementStatus.SETTLED)
        .where(DomainEvent.settlement_status != SettlementStatus.NOT_REQUIRED)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _record(db_session, order_id, to_status="confirmed") -> DomainEvent:
    event = await EventService(db_session).record(
        EventType.ORDER_STATUS_CHANGED,
        {"order_id": order_id, "to_status": to_status},
        order_id=order_id,
        requires_settlement=True,
    )
    await db_session.commit()
    return event


@pytest.mark.unit
class TestBackoff:
    @pytest.mark.parametrize("retry_count,expected", [
        (0, 30), (1, 60), (2, 120), (6, 1920), (7, 3600), (50, 3600), (10 ** 6, 3600), (-3, 30),
    ])
    def test_exponential_with_ceiling(self, retry_count, expected):
        assert _calculate_backoff_seconds(retry_count, base_seconds=30, max_backoff_seconds=3600) == expected

    def test_degenerate_settings(self):
        assert _calculate_backoff_seconds(3, base_seconds=0, max_backoff_seconds=3600) == 0
        assert _calculate_backoff_seconds(3, base_seconds=30, max_backoff_seconds=0) == 0
        assert _calculate_backoff_seconds(0, base_seconds=5000, max_backoff_seconds=3600) == 3600

    def test_power_of_two_ratio(self):
        # 3200 / 100 = 32 = 2**5
        assert _calculate_backoff_seconds(4, base_seconds=100, max_backoff_seconds=3200) == 1600
        assert _calculate_backoff_seconds(5, base_seconds=100, max_backoff_seconds=3200) == 3200


@pytest.mark.unit
class TestSettlementKind:
    @pytest.mark.parametrize("event_type,to_status,kind", [
        (EventType.ORDER_STATUS_CHANGED, "processing", ORDER_PAID),
        (EventType.ORDER_STATUS_CHANGED, "refunded", ORDER_REFUNDED),
        (EventType.ORDER_STATUS_CHANGED, "confirmed", None),
        (EventType.DELIVERY_COMPLETED, None, DELIVERY_COMPLETED),
        (EventType.DELIVERY_ACCEPTED, None, None),
    ])
    def test_kind(self, event_type, to_status, kind):
        event = DomainEvent(event_type=event_type, payload={"to_status": to_status})

        assert settlement_kind(event) == kind


@pytest.mark.unit
class TestFailureRecording:
    """A refund that cannot be paid back stays pending and is retried"""

    @pytest.fixture
    async def delivered_then_withdrawn(self, db_session, order_factory, deliver, rider):
        order = await order_factory(
            until=OrderStatus.READY, delivery_fee=Decimal("1500"), vehicle_type="bicycle",
        )
        await deliver(order.id)
        wallets = WalletService(db_session)
        account = await wallets.add_bank_account(rider.id, "Ada Rider", "First Bank", "0123456789")
        payout = await wallets.request_withdrawal(rider.id, Decimal("1000"), account.id)
        return order.id, payout.id

    @pytest.mark.asyncio
    async def test_failed_refund_is_recorded_and_rolled_back(
        self, db_session, delivered_then_withdrawn, vendor, rider, admin
    ):
        order_id, _ = delivered_then_withdrawn

        with pytest.raises(InsufficientFundsError):
            await OrderService(db_session).refund(order_id, admin)

        # המעבר עצמו נשמר, רק הסליקה נכשלה
        assert (await fetch_order(db_session, order_id)).status == OrderStatus.REFUNDED
        event = await _pending_refund_event(db_session, order_id)
        assert event.settlement_status == SettlementStatus.PENDING
        assert event.retry_count == 1
        assert "Insufficient funds" in event.last_error
        assert event.next_retry_at > datetime.utcnow()
        assert_money(await available(db_session, vendor.id, OwnerType.VENDOR), "10350")
        assert_money(await available(db_session, rider.id, OwnerType.RIDER), "800")

    @pytest.mark.asyncio
    async def test_retry_succeeds_once_funds_return(
        self, db_session, delivered_then_withdrawn, vendor, rider, admin, assert_reconciled
    ):
        order_id, payout_id = delivered_then_withdrawn
        with pytest.raises(InsufficientFundsError):
            await OrderService(db_session).refund(order_id, admin)
        event = await _pending_refund_event(db_session, order_id)

        await WalletService(db_session).fail_payout(payout_id, "bank rejected transfer")
        result = await SettlementCoordinator(db_session).settle(event.id)

        assert result.status == SettlementStatus.SETTLED
        assert result.entries_written == 6
        assert_money(await available(db_session, vendor.id, OwnerType.VENDOR), "0")
        assert_money(await available(db_session, rider.id, OwnerType.RIDER), "0")
        assert_money(await platform_available(db_session), "0")
        await assert_reconciled()

    @pytest.mark.asyncio
    async def test_event_fails_at_retry_ceiling(self, db_session, delivered_then_withdrawn, admin):
        order_id, _ = delivered_then_withdrawn
        with pytest.raises(InsufficientFundsError):
            await OrderService(db_session).refund(order_id, admin)
        event = await _pending_refund_event(db_session, order_id)
        await db_session.execute(
            update(DomainEvent)
            .where(DomainEvent.id == event.id)
            .values(retry_count=settings.SETTLEMENT_MAX_RETRIES - 1)
        )
        await db_session.commit()
        coordinator = SettlementCoordinator(db_session)

        with pytest.raises(InsufficientFundsError):
            await coordinator.settle(event.id)

        event = await _pending_refund_event(db_session, order_id)
        assert event.settlement_status == SettlementStatus.FAILED
        assert event.retry_count == settings.SETTLEMENT_MAX_RETRIES
        assert event.next_retry_at is None

        again = await coordinator.settle(event.id)
        assert again.duplicate is True
        assert again.status == SettlementStatus.FAILED


@pytest.mark.unit
class TestOrdering:
    @pytest.mark.asyncio
    async def test_later_event_waits_for_earlier_one(self, db_session):
        order_id = uuid.uuid4()
        first = await _record(db_session, order_id)
        second = await _record(db_session, order_id)
        coordinator = SettlementCoordinator(db_session)

        waiting = await coordinator.settle(second.id)
        assert waiting.status == SettlementStatus.PENDING
        assert waiting.error == f"waiting for event {first.id}"

        settled_first = await coordinator.settle(first.id)
        settled_second = await coordinator.settle(second.id)
        assert settled_first.status == SettlementStatus.SETTLED
        assert settled_first.entries_written == 0
        assert settled_second.status == SettlementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_other_orders_are_not_blocked(self, db_session):
        await _record(db_session, uuid.uuid4())
        independent = await _record(db_session, uuid.uuid4())

        result = await SettlementCoordinator(db_session).settle(independent.id)

        assert result.status == SettlementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_unknown_event(self, db_session):
        with pytest.raises(SettlementError):
            await SettlementCoordinator(db_session).settle(987654)


@pytest.mark.unit
class TestSettlePending:
    @pytest.mark.asyncio
    async def test_only_due_events_are_picked_up(self, db_session):
        due = await _record(db_session, uuid.uuid4())
        later = await _record(db_session, uuid.uuid4())
        retried = await _record(db_session, uuid.uuid4())
        now = datetime.utcnow()
        await db_session.execute(
            update(DomainEvent).where(DomainEvent.id == later.id).values(next_retry_at=now + timedelta(minutes=5))
        )
        await db_session.execute(
            update(DomainEvent).where(DomainEvent.id == retried.id).values(next_retry_at=now - timedelta(seconds=1))
        )
        await db_session.commit()

        results = await SettlementCoordinator(db_session).settle_pending()

        assert [r.event_id for r in results] == [due.id, retried.id]
        assert all(r.status == SettlementStatus.SETTLED for r in results)

    @pytest.mark.asyncio
    async def test_payment_settlement_runs_inline(self, db_session, order_factory, vendor):
        order = await order_factory(until=OrderStatus.PROCESSING)

        results = await SettlementCoordinator(db_session).settle_pending()

        assert results == []
        assert_money(await available(db_session, vendor.id, OwnerType.VENDOR), "10000")
