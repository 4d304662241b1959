"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.webhooks.fsm import router as fsm_webhook_router

router = APIRouter()

router.include_router(fsm_webhook_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
