"""
Payment and payout processor webhooks.

Both endpoints act as the ``system`` actor after the HMAC signature check.
Processors retry on non-2xx responses, so every handler is idempotent: a
repeated ``charge.success`` with the same reference or a repeated
``transfer.success`` for the same payout changes nothing.
"""
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_payment_signature, verify_payout_signature
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.order_service import OrderService
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

router = APIRouter()

PAYMENT_SUCCESS_EVENTS = {"charge.success"}
PAYMENT_FAILURE_EVENTS = {"charge.failed"}
PAYOUT_SUCCESS_EVENTS = {"transfer.success"}
PAYOUT_FAILURE_EVENTS = {"transfer.failed", "transfer.reversed"}
PAYOUT_PROCESSING_EVENTS = {"transfer.processing"}


class PaymentData(BaseModel):
    reference: str = Field(..., min_length=1, max_length=100)
    amount: Optional[Decimal] = None
    gateway_response: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentWebhook(BaseModel):
    event: str
    data: PaymentData


class PayoutData(BaseModel):
    reference: str = Field(..., min_length=1, max_length=100)
    transfer_code: Optional[str] = None
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PayoutWebhook(BaseModel):
    event: str
    data: PayoutData


def _metadata_uuid(metadata: dict[str, Any], key: str) -> UUID:
    raw = metadata.get(key)
    if not raw:
        raise ValidationException(f"metadata.{key} is required", field=f"data.metadata.{key}")
    try:
        return UUID(str(raw))
    except ValueError as e:
        raise ValidationException(f"metadata.{key} is not a valid id", field=f"data.metadata.{key}") from e


@router.post(
    "/payments",
    summary="Payment processor webhook",
    description="charge.success confirms the order payment; charge.failed marks it failed.",
    responses={
        200: {"description": "Event handled or ignored"},
        403: {"description": "Invalid signature"},
    },
)
async def payment_webhook(
    payload: PaymentWebhook,
    _: None = Depends(verify_payment_signature),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logger.info(
        "Payment webhook received",
        extra_data={"event": payload.event, "reference": payload.data.reference},
    )
    if payload.event not in PAYMENT_SUCCESS_EVENTS | PAYMENT_FAILURE_EVENTS:
        return {"status": "ignored", "event": payload.event}

    order_id = _metadata_uuid(payload.data.metadata, "order_id")
    service = OrderService(db)
    if payload.event in PAYMENT_SUCCESS_EVENTS:
        order = await service.confirm_payment(order_id, payload.data.reference, payload.data.amount)
    else:
        order = await service.fail_payment(order_id, payload.data.gateway_response)

    return {
        "status": "ok",
        "order_id": str(order.id),
        "order_status": order.status.value,
        "payment_status": order.payment_status.value,
    }


@router.post(
    "/payouts",
    summary="Payout processor webhook",
    description="transfer.success completes the payout; transfer.failed releases the reserved amount.",
    responses={
        200: {"description": "Event handled or ignored"},
        403: {"description": "Invalid signature"},
    },
)
async def payout_webhook(
    payload: PayoutWebhook,
    _: None = Depends(verify_payout_signature),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logger.info(
        "Payout webhook received",
        extra_data={"event": payload.event, "reference": payload.data.reference},
    )
    known = PAYOUT_SUCCESS_EVENTS | PAYOUT_FAILURE_EVENTS | PAYOUT_PROCESSING_EVENTS
    if payload.event not in known:
        return {"status": "ignored", "event": payload.event}

    payout_id = _metadata_uuid(payload.data.metadata, "payout_id")
    processor_reference = payload.data.transfer_code or payload.data.reference
    service = WalletService(db)
    if payload.event in PAYOUT_SUCCESS_EVENTS:
        payout = await service.complete_payout(payout_id, processor_reference)
    elif payload.event in PAYOUT_PROCESSING_EVENTS:
        payout = await service.mark_payout_processing(payout_id, processor_reference)
    else:
        payout = await service.fail_payout(payout_id, payload.data.reason or payload.event)

    return {"status": "ok", "payout_id": str(payout.id), "payout_status": payout.status.value}
