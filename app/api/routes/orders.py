"""
Order API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor
from app.core.auth import Actor, ActorRole
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.ledger_entry import BalanceKind, LedgerEntryStatus, LedgerEntryType
from app.db.models.order import OrderStatus, PaymentStatus
from app.domain.services.ledger_service import LedgerService
from app.domain.services.order_service import OrderLine, OrderService

logger = get_logger(__name__)

router = APIRouter()


class OrderItemRequest(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    carbon_impact: Decimal = Field(Decimal("0"), ge=0)


class CartLineRequest(OrderItemRequest):
    vendor_id: UUID


class OrderCreate(BaseModel):
    """Request schema for creating an order (customer_id comes from the token)"""
    vendor_id: UUID
    items: List[OrderItemRequest] = Field(..., min_length=1)
    delivery_fee: Optional[Decimal] = Field(None, ge=0)
    distance_km: Optional[Decimal] = Field(None, ge=0)
    include_green_fee: bool = False
    # רק אדמין רשאי ליצור הזמנה בשם לקוח אחר
    customer_id: Optional[UUID] = None

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: List[OrderItemRequest]) -> List[OrderItemRequest]:
        if not v:
            raise ValueError("Order must contain at least one item")
        return v


class CartCreate(BaseModel):
    lines: List[CartLineRequest] = Field(..., min_length=1)
    distance_by_vendor: dict[UUID, Decimal] = Field(default_factory=dict)
    include_green_fee: bool = False


class TransitionRequest(BaseModel):
    target_status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderItemResponse(BaseModel):
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    carbon_impact: Decimal

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    """Order snapshot"""
    id: UUID
    customer_id: UUID
    vendor_id: UUID
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    carbon_credits_earned: Decimal
    version: int
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    # Shown to the ordering customer only
    verification_code: Optional[str] = None
    items: List[OrderItemResponse] = []

    model_config = {"from_attributes": True}


class OrderLedgerEntryResponse(BaseModel):
    id: UUID
    wallet_id: UUID
    entry_type: LedgerEntryType
    balance_kind: BalanceKind
    amount: Decimal
    status: LedgerEntryStatus
    idempotency_key: str
    description: Optional[str] = None

    model_config = {"from_attributes": True}


def _customer_for(actor: Actor, requested: Optional[UUID]) -> UUID:
    if actor.role == ActorRole.CUSTOMER:
        if requested is not None and requested != actor.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot order for another customer")
        return actor.id
    if actor.role == ActorRole.ADMIN and requested is not None:
        return requested
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only customers place orders")


def _order_view(order, actor: Actor) -> OrderResponse:
    view = OrderResponse.model_validate(order)
    if not (actor.role == ActorRole.CUSTOMER and order.customer_id == actor.id):
        view.verification_code = None
    return view


async def _ensure_can_view(actor: Actor, order, service: OrderService) -> None:
    if actor.role == ActorRole.ADMIN:
        return
    if actor.role == ActorRole.CUSTOMER and order.customer_id == actor.id:
        return
    if actor.role == ActorRole.VENDOR and order.vendor_id == actor.id:
        return
    if actor.role == ActorRole.RIDER and await service.rider_is_assigned(order.id, actor.id):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this order")


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Creates one order for one vendor. The delivery fee is quoted from the distance when omitted.",
    responses={
        201: {"description": "Order created"},
        400: {"description": "Invalid items or amounts"},
        403: {"description": "Caller may not place this order"},
    },
)
async def create_order(
    data: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    customer_id = _customer_for(actor, data.customer_id)
    service = OrderService(db)
    order = await service.create_order(
        customer_id=customer_id,
        vendor_id=data.vendor_id,
        items=[OrderLine(**item.model_dump()) for item in data.items],
        delivery_fee=data.delivery_fee,
        distance_km=data.distance_km,
        include_green_fee=data.include_green_fee,
    )
    return _order_view(order, actor)


@router.post(
    "/cart",
    response_model=List[OrderResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Check out a multi-vendor cart",
    description="Splits the cart into one order per vendor, created in a single transaction.",
)
async def create_orders_from_cart(
    data: CartCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[OrderResponse]:
    customer_id = _customer_for(actor, None)
    service = OrderService(db)
    orders = await service.create_orders_from_cart(
        customer_id,
        [OrderLine(**line.model_dump()) for line in data.lines],
        distance_by_vendor=data.distance_by_vendor,
        include_green_fee=data.include_green_fee,
    )
    return [_order_view(order, actor) for order in orders]


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    responses={404: {"description": "Order not found"}},
)
async def get_order(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    service = OrderService(db)
    order = await service.get_order(order_id)
    await _ensure_can_view(actor, order, service)
    return _order_view(order, actor)


@router.get(
    "/{order_id}/ledger",
    response_model=List[OrderLedgerEntryResponse],
    summary="Ledger entries written for an order",
    description="Every settlement entry of the order and its deliveries (admin only).",
)
async def get_order_ledger(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[OrderLedgerEntryResponse]:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    await OrderService(db).get_order(order_id)
    entries = await LedgerService(db).get_order_ledger(order_id)
    return [OrderLedgerEntryResponse.model_validate(entry) for entry in entries]


@router.post(
    "/{order_id}/transition",
    response_model=OrderResponse,
    summary="Move an order along the state machine",
    responses={
        403: {"description": "Role may not take this edge"},
        404: {"description": "Order not found"},
        409: {"description": "Edge does not exist"},
    },
)
async def transition_order(
    order_id: UUID,
    data: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Order transition request",
        extra_data={"order_id": str(order_id), "target_status": data.target_status.value, "role": actor.role.value},
    )
    order = await OrderService(db).transition(order_id, data.target_status, actor, data.reason)
    return _order_view(order, actor)


@router.post(
    "/{order_id}/refund",
    response_model=OrderResponse,
    summary="Refund an order",
    description="Moves a delivered or cancelled paid order to refunded and compensates its ledger entries.",
)
async def refund_order(
    order_id: UUID,
    data: RefundRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await OrderService(db).refund(order_id, actor, data.reason)
    return _order_view(order, actor)
