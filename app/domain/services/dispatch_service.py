"""
Dispatch Service - publishing deliveries, the acceptance race, rider progress

Acceptance is a single conditional UPDATE: it only matches a row that is
still ``available`` with no rider. The database applies it to exactly one
caller; everyone else gets an ``AlreadyAccepted`` value back, which is an
expected outcome and not an error. No row lock is held across requests.

Re-dispatching never changes the rider of an existing delivery: the old row
is closed (cancelled/expired) and a new row with ``dispatch_cycle + 1`` and
the same frozen fee and eco bonus is opened.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Actor, ActorRole
from app.core.config import settings
from app.core.exceptions import (
    DeliveryNotFoundError,
    DeliveryVerificationError,
    DeliveryVerificationLockedError,
    ForbiddenError,
    InvalidTransitionError,
    OutOfOrderError,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.domain_event import DomainEvent, EventType
from app.db.models.order import Order, OrderStatus
from app.domain.services.event_service import EventService
from app.domain.services.pricing_service import calculate_eco_bonus, estimate_delivery_times
from app.state_machine.states import (
    ACTIVE_DELIVERY_STATUSES,
    CANCELLABLE_DELIVERY_STATUSES,
    DELIVERABLE_ORDER_STATUSES,
    DELIVERY_SEQUENCE,
    is_valid_delivery_transition,
    next_delivery_status,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlreadyAccepted:
    """Another rider won the race; re-poll the available deliveries"""
    delivery_id: UUID
    status: DeliveryStatus
    outcome: str = "already_accepted"


@dataclass
class DeliveryFilter:
    """Filter for listAvailableDeliveries"""
    max_distance_km: Optional[Decimal] = None
    min_fee: Optional[Decimal] = None
    eco_only: bool = False
    vehicle_type: Optional[str] = None
    limit: int = 50


AcceptResult = Union[Delivery, AlreadyAccepted]


def generate_verification_code() -> str:
    """4-digit hand-off code the customer reads out to the rider"""
    return f"{secrets.randbelow(10000):04d}"


class DispatchService:
    """Service for delivery dispatch"""

    def __init__(self, db: AsyncSession, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)

    async def _finish(self, settlement_event: Optional[DomainEvent] = None) -> None:
        await self.db.commit()
        await self.events.publish_staged()
        if settlement_event is not None:
            from app.domain.services.settlement_service import SettlementCoordinator
            await SettlementCoordinator(self.db).settle(settlement_event.id)

    def _order_service(self):
        from app.domain.services.order_service import OrderService
        return OrderService(self.db, events=self.events)

    # ==================== Lookup ====================

    async def get_delivery(self, delivery_id: UUID, for_update: bool = False) -> Delivery:
        query = select(Delivery).where(Delivery.id == delivery_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        delivery = result.scalar_one_or_none()
        if not delivery:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def get_active_delivery(self, order_id: UUID) -> Optional[Delivery]:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.order_id == order_id, Delivery.status.in_(ACTIVE_DELIVERY_STATUSES))
            .order_by(Delivery.dispatch_cycle.desc())
        )
        return result.scalars().first()

    async def _get_order(self, order_id: UUID, for_update: bool = False) -> Order:
        return await self._order_service().get_order(order_id, for_update=for_update)

    async def list_available(self, delivery_filter: Optional[DeliveryFilter] = None) -> List[Delivery]:
        """listAvailableDeliveries: open deliveries, oldest first"""
        delivery_filter = delivery_filter or DeliveryFilter()
        query = select(Delivery).where(Delivery.status == DeliveryStatus.AVAILABLE)
        if delivery_filter.max_distance_km is not None:
            query = query.where(Delivery.distance <= delivery_filter.max_distance_km)
        if delivery_filter.min_fee is not None:
            query = query.where(Delivery.delivery_fee >= delivery_filter.min_fee)
        if delivery_filter.eco_only:
            query = query.where(Delivery.eco_bonus > 0)
        if delivery_filter.vehicle_type:
            query = query.where(func.lower(Delivery.vehicle_type) == delivery_filter.vehicle_type.lower())
        query = query.order_by(Delivery.created_at.asc()).limit(delivery_filter.limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_rider_deliveries(self, rider_id: UUID, active_only: bool = False) -> List[Delivery]:
        query = select(Delivery).where(Delivery.rider_id == rider_id)
        if active_only:
            query = query.where(Delivery.status.in_(ACTIVE_DELIVERY_STATUSES))
        result = await self.db.execute(query.order_by(Delivery.created_at.desc()))
        return list(result.scalars().all())

    # ==================== Publish ====================

    async def _open_delivery(
        self,
        order: Order,
        distance: Decimal,
        vehicle_type: Optional[str],
        eco_bonus: Decimal,
        dispatch_cycle: int,
    ) -> Delivery:
        now = datetime.utcnow()
        pickup_eta, delivery_eta = estimate_delivery_times(now, distance)
        # אותו קוד לכל מחזורי השליחה של ההזמנה
        if order.verification_code is None:
            order.verification_code = generate_verification_code()
        delivery = Delivery(
            order_id=order.id,
            dispatch_cycle=dispatch_cycle,
            rider_id=None,
            status=DeliveryStatus.AVAILABLE,
            distance=distance,
            vehicle_type=vehicle_type,
            delivery_fee=order.delivery_fee,
            eco_bonus=eco_bonus,
            estimated_pickup_time=pickup_eta,
            estimated_delivery_time=delivery_eta,
            created_at=now,
        )
        self.db.add(delivery)
        await self.db.flush()
        await self.events.record(
            EventType.DELIVERY_PUBLISHED,
            {
                "delivery_id": delivery.id,
                "order_id": order.id,
                "dispatch_cycle": dispatch_cycle,
                "delivery_fee": delivery.delivery_fee,
                "eco_bonus": eco_bonus,
            },
            order_id=order.id,
            delivery_id=delivery.id,
        )
        logger.info(
            "Delivery published",
            extra_data={
                "delivery_id": str(delivery.id),
                "order_id": str(order.id),
                "dispatch_cycle": dispatch_cycle,
                "delivery_fee": str(delivery.delivery_fee),
                "eco_bonus": str(eco_bonus),
            },
        )
        return delivery

    async def publish_for_order(
        self,
        order: Order,
        distance_km: Optional[Decimal] = None,
        vehicle_type: Optional[str] = None,
    ) -> Delivery:
        """Open the first dispatch cycle for an order; returns the active one if present"""
        if order.status not in DELIVERABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                "delivery", "none", DeliveryStatus.AVAILABLE.value,
                f"order is '{order.status.value}', not deliverable",
            )
        active = await self.get_active_delivery(order.id)
        if active is not None:
            return active

        result = await self.db.execute(
            select(func.max(Delivery.dispatch_cycle)).where(Delivery.order_id == order.id)
        )
        cycle = (result.scalar() or 0) + 1

        if distance_km is None:
            distance_km = order.distance_km or 0
        distance = Decimal(str(distance_km)).quantize(Decimal("0.01"))
        if vehicle_type:
            vehicle_type = vehicle_type.strip().lower()
        eco_bonus = calculate_eco_bonus(distance, vehicle_type)
        return await self._open_delivery(order, distance, vehicle_type, eco_bonus, cycle)

    @log_async_operation("publish_delivery")
    async def publish(
        self,
        order_id: UUID,
        actor: Actor,
        distance_km: Optional[Decimal] = None,
        vehicle_type: Optional[str] = None,
    ) -> Delivery:
        """publish: advertise a delivery for an order in a deliverable status"""
        order = await self._get_order(order_id, for_update=True)
        if actor.role == ActorRole.VENDOR and order.vendor_id != actor.id:
            raise ForbiddenError("Order belongs to another vendor", actor_role=actor.role.value)
        if actor.role not in (ActorRole.VENDOR, ActorRole.ADMIN, ActorRole.SYSTEM):
            raise ForbiddenError("Role may not publish deliveries", actor_role=actor.role.value)

        delivery = await self.publish_for_order(order, distance_km, vehicle_type)
        await self._finish()
        return delivery

    async def _republish(self, previous: Delivery) -> Optional[Delivery]:
        """Open the next dispatch cycle with the previous frozen fee and bonus"""
        order = await self._get_order(previous.order_id)
        if order.status not in DELIVERABLE_ORDER_STATUSES:
            return None
        return await self._open_delivery(
            order,
            previous.distance,
            previous.vehicle_type,
            previous.eco_bonus,
            previous.dispatch_cycle + 1,
        )

    # ==================== Accept ====================

    @log_async_operation("accept_delivery")
    async def accept(self, delivery_id: UUID, rider_id: UUID) -> AcceptResult:
        """
        acceptDelivery: award the delivery to exactly one rider.

        A retry by the rider who already won returns the delivery again.
        """
        now = datetime.utcnow()
        result = await self.db.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                Delivery.status == DeliveryStatus.AVAILABLE,
                Delivery.rider_id.is_(None),
            )
            .values(
                rider_id=rider_id,
                status=DeliveryStatus.ACCEPTED,
                accepted_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            delivery = await self.get_delivery(delivery_id)
            await self.events.record(
                EventType.DELIVERY_ACCEPTED,
                {"delivery_id": delivery.id, "order_id": delivery.order_id, "rider_id": rider_id},
                order_id=delivery.order_id,
                delivery_id=delivery.id,
            )
            await self._finish()
            logger.info(
                "Delivery accepted",
                extra_data={"delivery_id": str(delivery_id), "rider_id": str(rider_id)},
            )
            return delivery

        # לא עודכנה שורה - המשלוח לא קיים או שכבר נתפס
        result = await self.db.execute(
            select(Delivery).where(Delivery.id == delivery_id).execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        await self.db.commit()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        if delivery.rider_id == rider_id and delivery.status in ACTIVE_DELIVERY_STATUSES | {DeliveryStatus.DELIVERED}:
            logger.info(
                "Delivery acceptance retried by the winning rider",
                extra_data={"delivery_id": str(delivery_id), "rider_id": str(rider_id)},
            )
            return delivery

        logger.info(
            "Delivery acceptance lost",
            extra_data={
                "delivery_id": str(delivery_id),
                "rider_id": str(rider_id),
                "status": delivery.status.value,
            },
        )
        return AlreadyAccepted(delivery_id=delivery_id, status=delivery.status)

    # ==================== Advance ====================

    async def _check_handoff_code(self, delivery: Delivery, order: Order, code: Optional[str]) -> None:
        """
        Compare the code the rider typed with the order's hand-off code.

        A wrong code is counted and committed before raising, so the limit
        holds across requests.
        """
        limit = settings.DELIVERY_VERIFICATION_MAX_ATTEMPTS
        if delivery.verification_attempts >= limit:
            raise DeliveryVerificationLockedError(delivery.id, delivery.verification_attempts)
        if code is not None and order.verification_code is not None and secrets.compare_digest(
            code.strip().encode("utf-8"), order.verification_code.encode("utf-8")
        ):
            return

        delivery.verification_attempts += 1
        attempts = delivery.verification_attempts
        delivery_id = delivery.id
        await self.db.commit()
        logger.warning(
            "Wrong delivery verification code",
            extra_data={"delivery_id": str(delivery_id), "attempts": attempts, "limit": limit},
        )
        raise DeliveryVerificationError(delivery_id, attempts_remaining=max(limit - attempts, 0))

    @log_async_operation("advance_delivery")
    async def advance(
        self,
        delivery_id: UUID,
        rider_id: UUID,
        target_status: DeliveryStatus,
        verification_code: Optional[str] = None,
    ) -> Delivery:
        """
        advanceDelivery: move one step along the rider path.

        Only the assigned rider may advance. picked_up needs the order to be
        ready and moves it out for delivery; delivered needs the customer's
        hand-off code, completes the order and hands the rider payment to
        settlement.
        """
        delivery = await self.get_delivery(delivery_id, for_update=True)
        if delivery.rider_id is None or delivery.rider_id != rider_id:
            raise ForbiddenError(
                "Only the assigned rider may advance this delivery",
                actor_role=ActorRole.RIDER.value,
                details={"delivery_id": str(delivery_id)},
            )
        if delivery.status == target_status:
            return delivery
        if target_status not in DELIVERY_SEQUENCE or delivery.status not in ACTIVE_DELIVERY_STATUSES:
            raise InvalidTransitionError("delivery", delivery.status.value, target_status.value)

        expected = next_delivery_status(delivery.status)
        if target_status != expected or not is_valid_delivery_transition(delivery.status, target_status):
            raise OutOfOrderError(
                delivery_id, delivery.status.value, target_status.value,
                expected.value if expected else None,
            )

        now = datetime.utcnow()
        previous = delivery.status
        settlement_event = None
        orders = self._order_service()

        if target_status == DeliveryStatus.PICKED_UP:
            order = await self._get_order(delivery.order_id, for_update=True)
            if order.status == OrderStatus.READY:
                await orders.apply_transition(order, OrderStatus.OUT_FOR_DELIVERY, Actor.system(), via_delivery=True)
            elif order.status != OrderStatus.OUT_FOR_DELIVERY:
                raise InvalidTransitionError(
                    "delivery", previous.value, target_status.value,
                    f"order is '{order.status.value}', not ready",
                )
            delivery.picked_up_at = now
        elif target_status == DeliveryStatus.DELIVERED:
            order = await self._get_order(delivery.order_id, for_update=True)
            await self._check_handoff_code(delivery, order, verification_code)
            if order.status != OrderStatus.DELIVERED:
                await orders.apply_transition(order, OrderStatus.DELIVERED, Actor.system(), via_delivery=True)
            delivery.completed_at = now
            settlement_event = await self.events.record(
                EventType.DELIVERY_COMPLETED,
                {
                    "delivery_id": delivery.id,
                    "order_id": delivery.order_id,
                    "rider_id": rider_id,
                    "delivery_fee": delivery.delivery_fee,
                    "eco_bonus": delivery.eco_bonus,
                },
                order_id=delivery.order_id,
                delivery_id=delivery.id,
                requires_settlement=True,
            )

        delivery.status = target_status
        delivery.updated_at = now
        await self.db.flush()
        logger.info(
            "Delivery advanced",
            extra_data={
                "delivery_id": str(delivery_id),
                "rider_id": str(rider_id),
                "from_status": previous.value,
                "to_status": target_status.value,
            },
        )
        await self._finish(settlement_event)
        return delivery

    @log_async_operation("reset_delivery_verification")
    async def reset_verification(self, delivery_id: UUID, actor: Actor) -> Delivery:
        """Support unlocks a delivery whose hand-off attempts ran out"""
        if actor.role != ActorRole.ADMIN:
            raise ForbiddenError("Only an admin may reset verification attempts", actor_role=actor.role.value)
        delivery = await self.get_delivery(delivery_id, for_update=True)
        previous_attempts = delivery.verification_attempts
        delivery.verification_attempts = 0
        delivery.updated_at = datetime.utcnow()
        await self.db.commit()
        logger.info(
            "Delivery verification attempts reset",
            extra_data={"delivery_id": str(delivery_id), "previous_attempts": previous_attempts},
        )
        return delivery

    # ==================== Cancel / expire ====================

    async def _check_cancel_permission(self, delivery: Delivery, actor: Actor) -> None:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return
        if actor.role == ActorRole.RIDER and delivery.rider_id == actor.id:
            return
        if actor.role == ActorRole.VENDOR:
            order = await self._get_order(delivery.order_id)
            if order.vendor_id == actor.id:
                return
        raise ForbiddenError("Actor may not cancel this delivery", actor_role=actor.role.value)

    async def _close(self, delivery: Delivery, status: DeliveryStatus, reason: Optional[str]) -> None:
        if not is_valid_delivery_transition(delivery.status, status):
            raise InvalidTransitionError(
                "delivery", delivery.status.value, status.value,
                "picked up deliveries can only be compensated through an order refund",
            )
        delivery.status = status
        delivery.cancellation_reason = reason
        delivery.updated_at = datetime.utcnow()
        await self.db.flush()

    @log_async_operation("cancel_delivery")
    async def cancel(
        self,
        delivery_id: UUID,
        actor: Actor,
        reason: Optional[str] = None,
        republish: bool = True,
    ) -> Delivery:
        """
        Cancel before pickup and put the order back in the pool.

        Returns the new available delivery when one is opened, otherwise the
        cancelled one.
        """
        delivery = await self.get_delivery(delivery_id, for_update=True)
        await self._check_cancel_permission(delivery, actor)
        if delivery.status not in CANCELLABLE_DELIVERY_STATUSES:
            raise InvalidTransitionError(
                "delivery", delivery.status.value, DeliveryStatus.CANCELLED.value,
                "picked up deliveries can only be compensated through an order refund",
            )

        await self._close(delivery, DeliveryStatus.CANCELLED, reason)
        logger.info(
            "Delivery cancelled",
            extra_data={"delivery_id": str(delivery_id), "actor_role": actor.role.value, "reason": reason},
        )
        replacement = await self._republish(delivery) if republish else None
        await self._finish()
        return replacement or delivery

    async def cancel_for_order(self, order: Order, reason: str) -> Optional[Delivery]:
        """Order cancelled: close its active delivery without republishing"""
        delivery = await self.get_active_delivery(order.id)
        if delivery is None:
            return None
        await self._close(delivery, DeliveryStatus.CANCELLED, reason)
        logger.info(
            "Delivery cancelled with its order",
            extra_data={"delivery_id": str(delivery.id), "order_id": str(order.id)},
        )
        return delivery

    @log_async_operation("expire_stale_deliveries")
    async def expire_stale(self, now: Optional[datetime] = None) -> dict:
        """
        Sweep deliveries nobody moved in time.

        ``available`` past the acceptance TTL become ``expired``; ``accepted``
        past the grace period are cancelled. Both are republished. Each row is
        closed with a conditional update so a concurrent accept wins cleanly.
        """
        now = now or datetime.utcnow()
        stats = {"expired": 0, "reassigned": 0, "republished": 0}

        ttl_cutoff = now - timedelta(seconds=settings.DELIVERY_ACCEPTANCE_TTL_SECONDS)
        result = await self.db.execute(
            select(Delivery.id).where(
                Delivery.status == DeliveryStatus.AVAILABLE,
                Delivery.created_at < ttl_cutoff,
            )
        )
        for delivery_id in result.scalars().all():
            closed = await self.db.execute(
                update(Delivery)
                .where(
                    Delivery.id == delivery_id,
                    Delivery.status == DeliveryStatus.AVAILABLE,
                    Delivery.rider_id.is_(None),
                )
                .values(status=DeliveryStatus.EXPIRED, cancellation_reason="acceptance window elapsed", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount != 1:
                continue
            delivery = await self.get_delivery(delivery_id)
            stats["expired"] += 1
            await self.events.record(
                EventType.DELIVERY_EXPIRED,
                {"delivery_id": delivery.id, "order_id": delivery.order_id, "dispatch_cycle": delivery.dispatch_cycle},
                order_id=delivery.order_id,
                delivery_id=delivery.id,
            )
            if await self._republish(delivery):
                stats["republished"] += 1

        grace_cutoff = now - timedelta(seconds=settings.DELIVERY_ACCEPTED_GRACE_SECONDS)
        result = await self.db.execute(
            select(Delivery.id).where(
                Delivery.status == DeliveryStatus.ACCEPTED,
                Delivery.accepted_at < grace_cutoff,
            )
        )
        for delivery_id in result.scalars().all():
            closed = await self.db.execute(
                update(Delivery)
                .where(Delivery.id == delivery_id, Delivery.status == DeliveryStatus.ACCEPTED)
                .values(status=DeliveryStatus.CANCELLED, cancellation_reason="rider inactive", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount != 1:
                continue
            delivery = await self.get_delivery(delivery_id)
            stats["reassigned"] += 1
            logger.info(
                "Idle accepted delivery cancelled",
                extra_data={"delivery_id": str(delivery_id), "rider_id": str(delivery.rider_id)},
            )
            if await self._republish(delivery):
                stats["republished"] += 1

        await self._finish()
        if stats["expired"] or stats["reassigned"]:
            logger.info("Stale deliveries swept", extra_data=stats)
        return stats
