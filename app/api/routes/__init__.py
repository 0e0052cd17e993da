"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_debug import router as admin_debug_router
from app.api.routes.orders import router as orders_router
from app.api.webhooks.courier import router as courier_webhook_router
from app.api.webhooks.ordering_platform import router as platform_webhook_router

router = APIRouter()

router.include_router(platform_webhook_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(courier_webhook_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(orders_router, tags=["dashboard"])
router.include_router(admin_debug_router, prefix="/admin/debug", tags=["admin-debug"])
