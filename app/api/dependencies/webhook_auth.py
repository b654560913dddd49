"""
Signature check for payment and payout processor webhooks.

The processor signs the raw request body with HMAC-SHA512 and sends the hex
digest in ``X-Webhook-Signature``. The dependencies below recompute it with
the configured secret.

Usage:
    @router.post("/payments")
    async def payment_webhook(
        request: Request,
        _: None = Depends(verify_payment_signature),
    ):
        ...
"""
import hashlib
import hmac

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


async def _verify(request: Request, signature: str | None, secret: str, source: str) -> None:
    """
    - empty secret: skip (a warning is emitted at startup)
    - missing or wrong signature: 403 Forbidden
    """
    if not secret:
        return

    if not signature:
        logger.warning("Webhook without signature header", extra_data={"source": source})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook signature",
        )

    body = await request.body()
    expected = compute_signature(secret, body)
    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(signature.strip().lower(), expected):
        logger.warning("Webhook signature mismatch", extra_data={"source": source})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook signature",
        )


async def verify_payment_signature(
    request: Request,
    x_webhook_signature: str | None = Header(None),
) -> None:
    await _verify(request, x_webhook_signature, settings.PAYMENT_WEBHOOK_SECRET, "payments")


async def verify_payout_signature(
    request: Request,
    x_webhook_signature: str | None = Header(None),
) -> None:
    await _verify(request, x_webhook_signature, settings.PAYOUT_WEBHOOK_SECRET, "payouts")
