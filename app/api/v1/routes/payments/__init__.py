"""Payment routes package - Stripe integration."""

from .plan_change import router as plan_change_router
from .stripe_payments import router as stripe_payments_router
from .stripe_webhooks import router as stripe_webhooks_router

__all__ = ["plan_change_router", "stripe_payments_router", "stripe_webhooks_router"]
