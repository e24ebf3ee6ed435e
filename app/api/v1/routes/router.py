# Main Router - app/api/v1/router.py
from fastapi import APIRouter
from app.api.v1.routes.auth.auth import router as auth_router
from app.api.v1.routes.user.user import router as user_router
from app.api.v1.routes.payments import (
    plan_change_router,
    stripe_payments_router,
    stripe_webhooks_router,
)

router = APIRouter()

# Session routes
router.include_router(auth_router)

# Webhook routes (no user authentication, signature verified instead)
router.include_router(stripe_webhooks_router)

# Authenticated routes
router.include_router(user_router)
router.include_router(stripe_payments_router)
router.include_router(plan_change_router)
