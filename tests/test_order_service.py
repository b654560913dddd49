"""
Unit tests for OrderService.

Creation, the state machine with its role checks, payment confirmation and
failure, cancellation cascade and the refund window.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.auth import Actor, ActorRole
from app.core.exceptions import (
    ErrorCode,
    ForbiddenError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationException,
)
from app.db.models.delivery import DeliveryStatus
from app.db.models.domain_event import EventType
from app.db.models.order import OrderStatus, PaymentStatus
from app.db.models.wallet import OwnerType
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.order_service import OrderLine, OrderService

from tests.conftest import available, make_actor


def _line(name="Suya", quantity=1, unit_price="2500", carbon="0", vendor_id=None):
    return OrderLine(
        product_name=name,
        quantity=quantity,
        unit_price=Decimal(unit_price),
        carbon_impact=Decimal(carbon),
        vendor_id=vendor_id,
    )


@pytest.mark.unit
class TestCreateOrder:
    """createOrder"""

    @pytest.mark.asyncio
    async def test_total_is_subtotal_plus_fee(self, db_session, customer, vendor):
        order = await OrderService(db_session).create_order(
            customer.id, vendor.id,
            [_line(quantity=3, unit_price="1250.50", carbon="0.75"), _line("Puff puff", 2, "300")],
            delivery_fee=Decimal("450"),
        )

        assert order.subtotal == Decimal("4351.50")
        assert order.total_amount == order.subtotal + order.delivery_fee == Decimal("4801.50")
        assert order.carbon_credits_earned == Decimal("0.75")
        assert [item.position for item in order.items] == [0, 1]
        assert order.items[0].total_price == Decimal("3751.50")
        assert order.version == 1

    @pytest.mark.asyncio
    async def test_fee_is_quoted_from_distance_when_missing(self, db_session, customer, vendor):
        order = await OrderService(db_session).create_order(
            customer.id, vendor.id, [_line()], distance_km=Decimal("4"),
        )

        # 350 בשעות רגילות, יותר בשעת שיא/לילה
        assert order.delivery_fee >= Decimal("350.00")
        assert order.total_amount == order.subtotal + order.delivery_fee

    @pytest.mark.asyncio
    async def test_records_creation_event(self, db_session, customer, vendor, fake_redis):
        await OrderService(db_session).create_order(customer.id, vendor.id, [_line()], delivery_fee=Decimal("0"))

        assert "cydex_events:OrderStatusChanged" in fake_redis.channels()
        _, message = fake_redis.published[0]
        assert message["payload"]["to_status"] == "pending"
        assert message["payload"]["from_status"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lines,field", [
        ([], "items"),
        ([_line(quantity=0)], "items[0].quantity"),
        ([_line(unit_price="-1")], "items[0].unit_price"),
        ([_line(name="  ")], "items[0].product_name"),
        ([_line(carbon="-0.5")], "items[0].carbon_impact"),
    ])
    async def test_invalid_lines_are_rejected(self, db_session, customer, vendor, lines, field):
        with pytest.raises(ValidationException) as exc_info:
            await OrderService(db_session).create_order(customer.id, vendor.id, lines, delivery_fee=Decimal("0"))

        assert exc_info.value.details["field"] == field

    @pytest.mark.asyncio
    async def test_negative_fee_is_rejected(self, db_session, customer, vendor):
        with pytest.raises(ValidationException):
            await OrderService(db_session).create_order(
                customer.id, vendor.id, [_line()], delivery_fee=Decimal("-10"),
            )


@pytest.mark.unit
class TestCartSplit:
    """create_orders_from_cart - הזמנה נפרדת לכל ספק"""

    @pytest.mark.asyncio
    async def test_one_order_per_vendor(self, db_session, customer):
        vendor_a, vendor_b = uuid.uuid4(), uuid.uuid4()
        lines = [
            _line("Amala", 1, "1500", vendor_id=vendor_a),
            _line("Shawarma", 2, "2000", vendor_id=vendor_b),
            _line("Ewedu", 1, "500", vendor_id=vendor_a),
        ]

        orders = await OrderService(db_session).create_orders_from_cart(
            customer.id, lines, distance_by_vendor={vendor_a: Decimal("2"), vendor_b: Decimal("6")},
        )

        assert [order.vendor_id for order in orders] == [vendor_a, vendor_b]
        assert orders[0].subtotal == Decimal("2000.00")
        assert [item.product_name for item in orders[0].items] == ["Amala", "Ewedu"]
        assert orders[1].subtotal == Decimal("4000.00")
        for order in orders:
            assert order.customer_id == customer.id
            assert order.total_amount == order.subtotal + order.delivery_fee
        assert orders[1].delivery_fee > orders[0].delivery_fee

    @pytest.mark.asyncio
    async def test_line_without_vendor_is_rejected(self, db_session, customer):
        with pytest.raises(ValidationException) as exc_info:
            await OrderService(db_session).create_orders_from_cart(customer.id, [_line()])

        assert exc_info.value.details["field"] == "lines[0].vendor_id"

    @pytest.mark.asyncio
    async def test_empty_cart_is_rejected(self, db_session, customer):
        with pytest.raises(ValidationException):
            await OrderService(db_session).create_orders_from_cart(customer.id, [])


@pytest.mark.unit
class TestTransitions:
    """transition: edges, roles and ownership"""

    @pytest.mark.asyncio
    async def test_vendor_walks_order_to_ready(self, db_session, order_factory):
        order = await order_factory(until=OrderStatus.READY)

        assert order.status == OrderStatus.READY
        assert order.version > 1

    @pytest.mark.asyncio
    async def test_confirmation_publishes_delivery(self, db_session, order_factory):
        order = await order_factory(until=OrderStatus.CONFIRMED)

        delivery = await DispatchService(db_session).get_active_delivery(order.id)
        assert delivery.status == DeliveryStatus.AVAILABLE
        assert delivery.delivery_fee == order.delivery_fee
        assert delivery.distance == Decimal("4.00")

    @pytest.mark.asyncio
    async def test_missing_edge_is_invalid(self, db_session, order_factory, admin):
        order = await order_factory()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await OrderService(db_session).transition(order.id, OrderStatus.DELIVERED, admin)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_self_transition_is_invalid(self, db_session, order_factory, customer):
        order = await order_factory()

        with pytest.raises(InvalidTransitionError):
            await OrderService(db_session).transition(order.id, OrderStatus.PENDING, customer)

    @pytest.mark.asyncio
    async def test_processing_only_through_payment(self, db_session, order_factory):
        order = await order_factory()

        with pytest.raises(InvalidTransitionError):
            await OrderService(db_session).transition(order.id, OrderStatus.PROCESSING, Actor.system())

    @pytest.mark.asyncio
    async def test_customer_cannot_confirm(self, db_session, order_factory, customer):
        order = await order_factory(until=OrderStatus.PROCESSING)

        with pytest.raises(ForbiddenError) as exc_info:
            await OrderService(db_session).transition(order.id, OrderStatus.CONFIRMED, customer)

        assert exc_info.value.details["actor_role"] == "customer"

    @pytest.mark.asyncio
    async def test_other_vendor_cannot_confirm(self, db_session, order_factory):
        order = await order_factory(until=OrderStatus.PROCESSING)

        with pytest.raises(ForbiddenError):
            await OrderService(db_session).transition(
                order.id, OrderStatus.CONFIRMED, make_actor(ActorRole.VENDOR),
            )

    @pytest.mark.asyncio
    async def test_other_customer_cannot_cancel(self, db_session, order_factory):
        order = await order_factory()

        with pytest.raises(ForbiddenError):
            await OrderService(db_session).transition(
                order.id, OrderStatus.CANCELLED, make_actor(ActorRole.CUSTOMER),
            )

    @pytest.mark.asyncio
    async def test_unassigned_rider_cannot_move_order(self, db_session, order_factory, rider):
        order = await order_factory(until=OrderStatus.READY)

        with pytest.raises(ForbiddenError):
            await OrderService(db_session).transition(order.id, OrderStatus.OUT_FOR_DELIVERY, rider)

    @pytest.mark.asyncio
    async def test_assigned_rider_cannot_move_order(self, db_session, order_factory, deliver, rider):
        order = await order_factory(until=OrderStatus.READY)
        await deliver(order.id, until=DeliveryStatus.ACCEPTED)
        orders = OrderService(db_session)

        with pytest.raises(ForbiddenError):
            await orders.transition(order.id, OrderStatus.OUT_FOR_DELIVERY, rider)

        assert (await orders.get_order(order.id)).status == OrderStatus.READY

    @pytest.mark.asyncio
    async def test_admin_waits_for_pickup(self, db_session, order_factory, deliver, admin):
        order = await order_factory(until=OrderStatus.READY)
        await deliver(order.id, until=DeliveryStatus.ACCEPTED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await OrderService(db_session).transition(order.id, OrderStatus.OUT_FOR_DELIVERY, admin)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATE_TRANSITION

    @pytest.mark.asyncio
    async def test_admin_without_delivery_is_refused(self, db_session, order_factory, admin):
        order = await order_factory(until=OrderStatus.READY)
        dispatch = DispatchService(db_session)
        opened = await dispatch.get_active_delivery(order.id)
        await dispatch.cancel(opened.id, admin, reason="no riders", republish=False)

        with pytest.raises(InvalidTransitionError):
            await OrderService(db_session).transition(order.id, OrderStatus.OUT_FOR_DELIVERY, admin)

    @pytest.mark.asyncio
    async def test_unknown_order(self, db_session, admin):
        with pytest.raises(OrderNotFoundError):
            await OrderService(db_session).transition(uuid.uuid4(), OrderStatus.CANCELLED, admin)

    @pytest.mark.asyncio
    async def test_transition_records_event_with_actor(self, db_session, order_factory, vendor, fake_redis):
        order = await order_factory(until=OrderStatus.PROCESSING)
        fake_redis.published.clear()

        await OrderService(db_session).transition(order.id, OrderStatus.CONFIRMED, vendor)

        changes = [m for c, m in fake_redis.published if c == f"cydex_events:{EventType.ORDER_STATUS_CHANGED.value}"]
        assert changes[0]["payload"]["from_status"] == "processing"
        assert changes[0]["payload"]["to_status"] == "confirmed"
        assert changes[0]["payload"]["actor_role"] == "vendor"
        assert changes[0]["payload"]["actor_id"] == str(vendor.id)


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_customer_cancels_pending_order(self, db_session, order_factory, customer):
        order = await order_factory()

        order = await OrderService(db_session).transition(
            order.id, OrderStatus.CANCELLED, customer, reason="changed my mind",
        )

        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "changed my mind"

    @pytest.mark.asyncio
    async def test_cancel_closes_active_delivery_without_republish(self, db_session, order_factory, vendor):
        order = await order_factory(until=OrderStatus.CONFIRMED)
        dispatch = DispatchService(db_session)
        delivery = await dispatch.get_active_delivery(order.id)

        await OrderService(db_session).transition(order.id, OrderStatus.CANCELLED, vendor, reason="closed early")

        delivery = await dispatch.get_delivery(delivery.id)
        assert delivery.status == DeliveryStatus.CANCELLED
        assert delivery.cancellation_reason == "closed early"
        assert await dispatch.get_active_delivery(order.id) is None

    @pytest.mark.asyncio
    async def test_cannot_cancel_once_out_for_delivery(self, db_session, order_factory, deliver, vendor):
        order = await order_factory(until=OrderStatus.READY)
        await deliver(order.id, until=DeliveryStatus.PICKED_UP)

        with pytest.raises(InvalidTransitionError):
            await OrderService(db_session).transition(order.id, OrderStatus.CANCELLED, vendor)


@pytest.mark.unit
class TestPayments:
    """confirm_payment / fail_payment"""

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_rejected(self, db_session, order_factory):
        order = await order_factory()

        with pytest.raises(ValidationException) as exc_info:
            await OrderService(db_session).confirm_payment(order.id, "PAY-X", amount=Decimal("10999"))

        assert exc_info.value.details["field"] == "amount"

    @pytest.mark.asyncio
    async def test_matching_amount_is_accepted(self, db_session, order_factory):
        order = await order_factory()

        order = await OrderService(db_session).confirm_payment(order.id, "PAY-OK", amount=Decimal("11000"))

        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_failed_payment_keeps_order_pending(self, db_session, order_factory):
        order = await order_factory()
        service = OrderService(db_session)

        order = await service.fail_payment(order.id, "card declined")

        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING
        # failed is terminal for the payment
        with pytest.raises(InvalidTransitionError):
            await service.confirm_payment(order.id, "PAY-LATE")

    @pytest.mark.asyncio
    async def test_fail_payment_is_idempotent(self, db_session, order_factory):
        order = await order_factory()
        service = OrderService(db_session)

        await service.fail_payment(order.id)
        order = await service.fail_payment(order.id)

        assert order.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_second_payment_with_other_reference_is_rejected(self, db_session, order_factory):
        order = await order_factory(until=OrderStatus.PROCESSING)

        with pytest.raises(InvalidTransitionError):
            await OrderService(db_session).confirm_payment(order.id, "PAY-OTHER")

    @pytest.mark.asyncio
    async def test_payment_after_cancellation_stays_paid_until_refund(
        self, db_session, order_factory, customer, vendor, admin, assert_reconciled
    ):
        order = await order_factory()
        service = OrderService(db_session)
        await service.transition(order.id, OrderStatus.CANCELLED, customer)

        order = await service.confirm_payment(order.id, "PAY-LATE")

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.PAID
        assert await available(db_session, vendor.id, OwnerType.VENDOR) == Decimal("0")

        order = await service.refund(order.id, admin, reason="paid after cancel")

        assert order.status == OrderStatus.REFUNDED
        assert order.payment_status == PaymentStatus.REFUNDED
        await assert_reconciled()

    @pytest.mark.asyncio
    async def test_lookup_by_reference(self, db_session, order_factory):
        order = await order_factory(until=OrderStatus.PROCESSING)

        found = await OrderService(db_session).get_order_by_reference(f"ref-{order.id}")

        assert found.id == order.id


@pytest.mark.unit
class TestRefunds:
    @pytest.mark.asyncio
    async def test_unpaid_order_cannot_be_refunded(self, db_session, order_factory, customer, admin):
        order = await order_factory()
        service = OrderService(db_session)
        await service.transition(order.id, OrderStatus.CANCELLED, customer)

        with pytest.raises(InvalidTransitionError):
            await service.refund(order.id, admin)

    @pytest.mark.asyncio
    async def test_vendor_cannot_refund(self, db_session, order_factory, deliver, vendor):
        order = await order_factory(until=OrderStatus.READY)
        await deliver(order.id)

        with pytest.raises(ForbiddenError):
            await OrderService(db_session).refund(order.id, vendor)

    @pytest.mark.asyncio
    async def test_refund_window_closes(self, db_session, order_factory, deliver, admin):
        order = await order_factory(until=OrderStatus.READY)
        await deliver(order.id)
        service = OrderService(db_session)
        order = await service.get_order(order.id)
        order.delivered_at = datetime.utcnow() - timedelta(hours=73)
        await db_session.commit()

        with pytest.raises(ValidationException) as exc_info:
            await service.refund(order.id, admin)

        assert exc_info.value.error_code == ErrorCode.REFUND_WINDOW_CLOSED
        order = await service.get_order(order.id)
        assert order.status == OrderStatus.DELIVERED
