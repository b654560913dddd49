"""
Order Service - order creation and the order/payment state machines

Every status change is validated against ``ORDER_TRANSITIONS`` and the role
table, committed together with its ``OrderStatusChanged`` event, and, when it
moves money (payment confirmed, refund), handed to the settlement coordinator
right after the commit.
"""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Actor, ActorRole
from app.core.config import settings
from app.core.exceptions import (
    ErrorCode,
    ForbiddenError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.delivery import Delivery
from app.db.models.domain_event import DomainEvent, EventType
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from app.domain.services.event_service import EventService
from app.domain.services.pricing_service import quote_delivery_fee
from app.state_machine.states import (
    ACTIVE_DELIVERY_STATUSES,
    is_valid_order_transition,
    is_valid_payment_transition,
    order_edge_delivery_gate,
    order_edge_roles,
)

logger = get_logger(__name__)

_CENTS = Decimal("0.01")


@dataclass
class OrderLine:
    """One requested line of an order (or of a multi-vendor cart)"""
    product_name: str
    quantity: int
    unit_price: Decimal
    carbon_impact: Decimal = Decimal("0")
    vendor_id: Optional[UUID] = None


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS)


class OrderService:
    """Service for orders and their status/payment transitions"""

    def __init__(self, db: AsyncSession, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)

    # ==================== Creation ====================

    def _build_order(
        self,
        customer_id: UUID,
        vendor_id: UUID,
        lines: Iterable[OrderLine],
        delivery_fee: Optional[Decimal],
        distance_km: Optional[Decimal],
        include_green_fee: bool,
    ) -> Order:
        lines = list(lines)
        if not lines:
            raise ValidationException("Order must contain at least one item", field="items")

        items = []
        subtotal = Decimal("0")
        carbon = Decimal("0")
        for position, line in enumerate(lines):
            if not line.product_name or not line.product_name.strip():
                raise ValidationException("Product name is required", field=f"items[{position}].product_name")
            if int(line.quantity) != line.quantity or line.quantity <= 0:
                raise ValidationException("Quantity must be a positive integer", field=f"items[{position}].quantity")
            unit_price = _money(line.unit_price)
            if unit_price < 0:
                raise ValidationException("Unit price must not be negative", field=f"items[{position}].unit_price")
            carbon_impact = _money(line.carbon_impact or 0)
            if carbon_impact < 0:
                raise ValidationException("Carbon impact must not be negative", field=f"items[{position}].carbon_impact")

            total_price = _money(unit_price * int(line.quantity))
            subtotal += total_price
            carbon += carbon_impact
            items.append(OrderItem(
                position=position,
                product_name=line.product_name.strip(),
                quantity=int(line.quantity),
                unit_price=unit_price,
                total_price=total_price,
                carbon_impact=carbon_impact,
            ))

        if distance_km is not None and Decimal(str(distance_km)) < 0:
            raise ValidationException("Distance must not be negative", field="distance_km")
        if delivery_fee is None:
            delivery_fee = quote_delivery_fee(distance_km or 0, include_green_fee=include_green_fee)
        delivery_fee = _money(delivery_fee)
        if delivery_fee < 0:
            raise ValidationException("Delivery fee must not be negative", field="delivery_fee")

        subtotal = _money(subtotal)
        return Order(
            customer_id=customer_id,
            vendor_id=vendor_id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total_amount=subtotal + delivery_fee,
            carbon_credits_earned=_money(carbon),
            distance_km=_money(distance_km) if distance_km is not None else None,
            items=items,
        )

    async def _add_order(self, order: Order) -> Order:
        self.db.add(order)
        await self.db.flush()
        await self.events.record(
            EventType.ORDER_STATUS_CHANGED,
            {
                "order_id": order.id,
                "from_status": None,
                "to_status": OrderStatus.PENDING,
                "total_amount": order.total_amount,
            },
            order_id=order.id,
        )
        logger.info(
            "Order created",
            extra_data={
                "order_id": str(order.id),
                "customer_id": str(order.customer_id),
                "vendor_id": str(order.vendor_id),
                "total_amount": str(order.total_amount),
            },
        )
        return order

    @log_async_operation("create_order")
    async def create_order(
        self,
        customer_id: UUID,
        vendor_id: UUID,
        items: Iterable[OrderLine],
        delivery_fee: Optional[Decimal] = None,
        distance_km: Optional[Decimal] = None,
        include_green_fee: bool = False,
        auto_commit: bool = True,
    ) -> Order:
        """
        createOrder: one order for one vendor.

        total_amount is fixed here as subtotal + delivery_fee and never
        recomputed. When no fee is given it is quoted from the distance.
        """
        order = self._build_order(customer_id, vendor_id, items, delivery_fee, distance_km, include_green_fee)
        await self._add_order(order)
        await self._finish(auto_commit)
        return order

    @log_async_operation("create_orders_from_cart")
    async def create_orders_from_cart(
        self,
        customer_id: UUID,
        lines: Iterable[OrderLine],
        distance_by_vendor: Optional[dict] = None,
        include_green_fee: bool = False,
    ) -> List[Order]:
        """Split a multi-vendor cart into one order per vendor, all in one transaction"""
        groups: "OrderedDict[UUID, List[OrderLine]]" = OrderedDict()
        for position, line in enumerate(lines):
            if line.vendor_id is None:
                raise ValidationException("Every cart line needs a vendor_id", field=f"lines[{position}].vendor_id")
            groups.setdefault(line.vendor_id, []).append(line)
        if not groups:
            raise ValidationException("Cart is empty", field="lines")

        distance_by_vendor = distance_by_vendor or {}
        orders = []
        for vendor_id, vendor_lines in groups.items():
            order = self._build_order(
                customer_id, vendor_id, vendor_lines,
                delivery_fee=None,
                distance_km=distance_by_vendor.get(vendor_id),
                include_green_fee=include_green_fee,
            )
            orders.append(await self._add_order(order))

        await self._finish(True)
        logger.info(
            "Cart split into orders",
            extra_data={"customer_id": str(customer_id), "order_count": len(orders)},
        )
        return orders

    # ==================== Lookup ====================

    async def get_order(self, order_id: UUID, for_update: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    async def rider_is_assigned(self, order_id: UUID, rider_id: UUID) -> bool:
        result = await self.db.execute(
            select(Delivery.id).where(
                Delivery.order_id == order_id,
                Delivery.rider_id == rider_id,
                Delivery.status.in_(ACTIVE_DELIVERY_STATUSES),
            )
        )
        return result.first() is not None

    # ==================== Transitions ====================

    async def _check_permission(self, order: Order, target: OrderStatus, actor: Actor) -> None:
        roles = order_edge_roles(order.status, target)
        if actor.role not in roles:
            raise ForbiddenError(
                f"Role '{actor.role.value}' may not move order from '{order.status.value}' to '{target.value}'",
                actor_role=actor.role.value,
                details={"order_id": str(order.id)},
            )
        if actor.role == ActorRole.CUSTOMER and order.customer_id != actor.id:
            raise ForbiddenError("Order belongs to another customer", actor_role=actor.role.value)
        if actor.role == ActorRole.VENDOR and order.vendor_id != actor.id:
            raise ForbiddenError("Order belongs to another vendor", actor_role=actor.role.value)

    def _check_cross_rules(self, order: Order, target: OrderStatus, via_payment: bool) -> None:
        """Rules that couple order status to payment status"""
        current = order.status.value
        if target == OrderStatus.PROCESSING and not via_payment:
            raise InvalidTransitionError("order", current, target.value, "only a confirmed payment moves an order to processing")
        if target == OrderStatus.DELIVERED and order.payment_status == PaymentStatus.FAILED:
            raise InvalidTransitionError("order", current, target.value, "payment failed")
        if target == OrderStatus.REFUNDED:
            if order.payment_status != PaymentStatus.PAID:
                raise InvalidTransitionError("order", current, target.value, "order was not paid")
            if order.status == OrderStatus.DELIVERED and order.delivered_at is not None:
                deadline = order.delivered_at + timedelta(hours=settings.REFUND_WINDOW_HOURS)
                if datetime.utcnow() > deadline:
                    raise ValidationException(
                        "Refund window has closed",
                        field="status",
                        details={"order_id": str(order.id), "delivered_at": order.delivered_at.isoformat()},
                        error_code=ErrorCode.REFUND_WINDOW_CLOSED,
                    )

    async def _check_delivery_gate(self, order: Order, target: OrderStatus) -> None:
        """The order may not run ahead of its delivery"""
        gate = order_edge_delivery_gate(order.status, target)
        if gate is None:
            return
        from app.domain.services.dispatch_service import DispatchService
        delivery = await DispatchService(self.db, events=self.events).get_active_delivery(order.id)
        if delivery is None or delivery.status not in gate:
            raise InvalidTransitionError(
                "order", order.status.value, target.value,
                f"delivery is '{delivery.status.value}'" if delivery else "order has no delivery in progress",
            )

    async def apply_transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
        via_payment: bool = False,
        via_delivery: bool = False,
    ) -> Optional[DomainEvent]:
        """
        Validate and apply one edge inside the caller's transaction.

        ``via_delivery`` is set only by delivery advancement, which moves the
        delivery in the same transaction. Returns the event that needs
        settlement, if any. Does not commit.
        """
        if not is_valid_order_transition(order.status, target):
            raise InvalidTransitionError("order", order.status.value, target.value)
        await self._check_permission(order, target, actor)
        self._check_cross_rules(order, target, via_payment)
        if not via_delivery:
            await self._check_delivery_gate(order, target)

        previous = order.status
        now = datetime.utcnow()
        order.status = target
        order.updated_at = now

        if target == OrderStatus.CANCELLED:
            order.cancellation_reason = reason
            await self._cancel_active_delivery(order, reason)
        elif target == OrderStatus.DELIVERED:
            order.delivered_at = now
        elif target == OrderStatus.REFUNDED:
            order.payment_status = PaymentStatus.REFUNDED
            order.refunded_at = now

        needs_settlement = target in (OrderStatus.PROCESSING, OrderStatus.REFUNDED)
        event = await self.events.record(
            EventType.ORDER_STATUS_CHANGED,
            {
                "order_id": order.id,
                "from_status": previous,
                "to_status": target,
                "payment_status": order.payment_status,
                "actor_id": actor.id,
                "actor_role": actor.role,
                "reason": reason,
            },
            order_id=order.id,
            requires_settlement=needs_settlement,
        )
        logger.info(
            "Order status changed",
            extra_data={
                "order_id": str(order.id),
                "from_status": previous.value,
                "to_status": target.value,
                "actor_role": actor.role.value,
            },
        )

        if target == OrderStatus.CONFIRMED:
            await self._publish_delivery(order)

        return event if needs_settlement else None

    async def _publish_delivery(self, order: Order) -> None:
        from app.domain.services.dispatch_service import DispatchService
        dispatch = DispatchService(self.db, events=self.events)
        await dispatch.publish_for_order(order)

    async def _cancel_active_delivery(self, order: Order, reason: Optional[str]) -> None:
        from app.domain.services.dispatch_service import DispatchService
        dispatch = DispatchService(self.db, events=self.events)
        await dispatch.cancel_for_order(order, reason or "order cancelled")

    @log_async_operation("order_transition")
    async def transition(
        self,
        order_id: UUID,
        target_status: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Order:
        """Move an order along one edge of the state machine"""
        order = await self.get_order(order_id, for_update=True)
        settlement_event = await self.apply_transition(order, target_status, actor, reason)
        await self._finish(True, settlement_event)
        return order

    async def refund(self, order_id: UUID, actor: Actor, reason: Optional[str] = None) -> Order:
        """Refund a delivered (or paid and cancelled) order"""
        return await self.transition(order_id, OrderStatus.REFUNDED, actor, reason)

    # ==================== Payments ====================

    @log_async_operation("confirm_payment")
    async def confirm_payment(
        self,
        order_id: UUID,
        payment_reference: str,
        amount: Optional[Decimal] = None,
    ) -> Order:
        """
        confirmPayment: payment processor reports a successful charge.

        Moves payment_status pending → paid and the order pending →
        processing. A repeated call with the same reference is a no-op.
        """
        order = await self.get_order(order_id, for_update=True)

        if order.payment_status == PaymentStatus.PAID and order.payment_reference == payment_reference:
            logger.info(
                "Payment already confirmed",
                extra_data={"order_id": str(order_id), "payment_reference": payment_reference},
            )
            await self._settle_outstanding(order.id)
            return order

        if not is_valid_payment_transition(order.payment_status, PaymentStatus.PAID):
            raise InvalidTransitionError("payment", order.payment_status.value, PaymentStatus.PAID.value)
        if amount is not None and _money(amount) != _money(order.total_amount):
            raise ValidationException(
                "Paid amount does not match order total",
                field="amount",
                details={"expected": str(order.total_amount), "received": str(amount)},
            )

        order.payment_status = PaymentStatus.PAID
        order.payment_reference = payment_reference
        order.paid_at = datetime.utcnow()

        settlement_event = None
        if order.status == OrderStatus.PENDING:
            settlement_event = await self.apply_transition(
                order, OrderStatus.PROCESSING, Actor.system(), via_payment=True,
            )
        else:
            # הזמנה בוטלה לפני שהתשלום הגיע - נשאר paid עד החזר
            logger.warning(
                "Payment confirmed for an order that is no longer pending",
                extra_data={"order_id": str(order_id), "status": order.status.value},
            )
            await self.events.record(
                EventType.ORDER_STATUS_CHANGED,
                {"order_id": order.id, "from_status": order.status, "to_status": order.status,
                 "payment_status": PaymentStatus.PAID},
                order_id=order.id,
            )

        await self._finish(True, settlement_event)
        return order

    @log_async_operation("fail_payment")
    async def fail_payment(self, order_id: UUID, reason: Optional[str] = None) -> Order:
        """Payment processor reports a failed charge; the order stays pending"""
        order = await self.get_order(order_id, for_update=True)
        if order.payment_status == PaymentStatus.FAILED:
            return order
        if not is_valid_payment_transition(order.payment_status, PaymentStatus.FAILED):
            raise InvalidTransitionError("payment", order.payment_status.value, PaymentStatus.FAILED.value)

        order.payment_status = PaymentStatus.FAILED
        order.updated_at = datetime.utcnow()
        await self.events.record(
            EventType.ORDER_STATUS_CHANGED,
            {
                "order_id": order.id,
                "from_status": order.status,
                "to_status": order.status,
                "payment_status": PaymentStatus.FAILED,
                "reason": reason,
            },
            order_id=order.id,
        )
        await self._finish(True)
        logger.warning("Payment failed", extra_data={"order_id": str(order_id), "reason": reason})
        return order

    async def get_order_by_reference(self, payment_reference: str) -> Order:
        result = await self.db.execute(select(Order).where(Order.payment_reference == payment_reference))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(payment_reference)
        return order

    # ==================== Commit + settlement ====================

    async def _settle_outstanding(self, order_id: UUID) -> None:
        from app.domain.services.settlement_service import SettlementCoordinator
        await SettlementCoordinator(self.db).settle_for_order(order_id)

    async def _finish(self, auto_commit: bool, settlement_event: Optional[DomainEvent] = None) -> None:
        if not auto_commit:
            await self.db.flush()
            return
        await self.db.commit()
        await self.events.publish_staged()
        if settlement_event is not None:
            from app.domain.services.settlement_service import SettlementCoordinator
            await SettlementCoordinator(self.db).settle(settlement_event.id)
