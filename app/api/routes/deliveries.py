"""
Delivery API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor, require_roles
from app.core.auth import Actor, ActorRole
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.delivery import DeliveryStatus
from app.domain.services.dispatch_service import AlreadyAccepted, DeliveryFilter, DispatchService

logger = get_logger(__name__)

router = APIRouter()


class PublishRequest(BaseModel):
    """Request schema for publishing a delivery"""
    distance_km: Optional[Decimal] = Field(None, ge=0, le=500)
    vehicle_type: Optional[str] = Field(None, max_length=50)

    @field_validator("vehicle_type")
    @classmethod
    def normalize_vehicle_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        return v or None


class AdvanceRequest(BaseModel):
    target_status: DeliveryStatus
    # נדרש רק במסירה - הקוד שהלקוח מקריא לשליח
    verification_code: Optional[str] = Field(None, pattern=r"^\d{4}$")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    republish: bool = True


class DeliveryResponse(BaseModel):
    """Response schema for delivery data"""
    id: UUID
    order_id: UUID
    dispatch_cycle: int
    rider_id: Optional[UUID] = None
    status: DeliveryStatus
    distance: Decimal
    vehicle_type: Optional[str] = None
    delivery_fee: Decimal
    eco_bonus: Decimal
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    verification_attempts: int = 0

    model_config = {"from_attributes": True}


@router.get(
    "/available",
    response_model=List[DeliveryResponse],
    summary="List available deliveries",
    description="Open deliveries nobody has accepted yet, oldest first.",
)
async def list_available_deliveries(
    max_distance_km: Optional[Decimal] = Query(None, ge=0),
    min_fee: Optional[Decimal] = Query(None, ge=0),
    eco_only: bool = False,
    vehicle_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[DeliveryResponse]:
    deliveries = await DispatchService(db).list_available(
        DeliveryFilter(
            max_distance_km=max_distance_km,
            min_fee=min_fee,
            eco_only=eco_only,
            vehicle_type=vehicle_type,
            limit=limit,
        )
    )
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@router.get(
    "/mine",
    response_model=List[DeliveryResponse],
    summary="Deliveries of the calling rider",
)
async def list_my_deliveries(
    active_only: bool = False,
    actor: Actor = Depends(require_roles(ActorRole.RIDER)),
    db: AsyncSession = Depends(get_db),
) -> List[DeliveryResponse]:
    deliveries = await DispatchService(db).list_rider_deliveries(actor.id, active_only=active_only)
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@router.get(
    "/{delivery_id}",
    response_model=DeliveryResponse,
    summary="Get delivery by ID",
    responses={404: {"description": "Delivery not found"}},
)
async def get_delivery(
    delivery_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    delivery = await DispatchService(db).get_delivery(delivery_id)
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/publish/{order_id}",
    response_model=DeliveryResponse,
    summary="Publish a delivery for an order",
    description="Advertises the order to riders. Returns the active delivery if one is already open.",
    responses={
        403: {"description": "Caller may not publish for this order"},
        409: {"description": "Order is not in a deliverable status"},
    },
)
async def publish_delivery(
    order_id: UUID,
    data: PublishRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    delivery = await DispatchService(db).publish(
        order_id, actor, distance_km=data.distance_km, vehicle_type=data.vehicle_type,
    )
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{delivery_id}/accept",
    response_model=DeliveryResponse,
    summary="Accept a delivery",
    description=(
        "Atomic acceptance: exactly one rider wins. Losers get 409 with "
        '`{"outcome": "already_accepted"}` and should re-poll the available list.'
    ),
    responses={
        200: {"description": "Delivery accepted by the caller"},
        404: {"description": "Delivery not found"},
        409: {"description": "Another rider accepted first"},
    },
)
async def accept_delivery(
    delivery_id: UUID,
    actor: Actor = Depends(require_roles(ActorRole.RIDER)),
    db: AsyncSession = Depends(get_db),
):
    result = await DispatchService(db).accept(delivery_id, actor.id)
    if isinstance(result, AlreadyAccepted):
        return JSONResponse(
            status_code=409,
            content={
                "outcome": result.outcome,
                "delivery_id": str(result.delivery_id),
                "status": result.status.value,
            },
        )
    return DeliveryResponse.model_validate(result)


@router.post(
    "/{delivery_id}/advance",
    response_model=DeliveryResponse,
    summary="Advance a delivery one step",
    responses={
        403: {"description": "Caller is not the assigned rider"},
        400: {"description": "Wrong verification code"},
        409: {"description": "Step skipped, delivery already closed or verification locked"},
    },
)
async def advance_delivery(
    delivery_id: UUID,
    data: AdvanceRequest,
    actor: Actor = Depends(require_roles(ActorRole.RIDER)),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    delivery = await DispatchService(db).advance(
        delivery_id, actor.id, data.target_status, verification_code=data.verification_code,
    )
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    summary="Cancel a delivery before pickup",
    description="Closes the delivery and, unless disabled, republishes the order with the same fee.",
)
async def cancel_delivery(
    delivery_id: UUID,
    data: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    logger.info(
        "Delivery cancel request",
        extra_data={"delivery_id": str(delivery_id), "role": actor.role.value},
    )
    delivery = await DispatchService(db).cancel(delivery_id, actor, data.reason, republish=data.republish)
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{delivery_id}/verification/reset",
    response_model=DeliveryResponse,
    summary="Unlock hand-off verification",
    description="Clears the failed verification code attempts of a delivery (admin only).",
)
async def reset_delivery_verification(
    delivery_id: UUID,
    actor: Actor = Depends(require_roles(ActorRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    delivery = await DispatchService(db).reset_verification(delivery_id, actor)
    return DeliveryResponse.model_validate(delivery)
