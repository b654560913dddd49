"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.deliveries import router as deliveries_router
from app.api.routes.orders import router as orders_router
from app.api.routes.wallets import router as wallets_router
from app.api.webhooks.payments import router as payments_webhook_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["Orders"])
router.include_router(deliveries_router, prefix="/deliveries", tags=["Deliveries"])
router.include_router(wallets_router, prefix="/wallets", tags=["Wallets"])
router.include_router(payments_webhook_router, prefix="/webhooks", tags=["Webhooks"])
