"""Payment services for the Stripe subscription integration."""

from .stripe_client import StripeClient, get_billing_client
from .subscription_service import SubscriptionService
from .plan_change_service import PlanChangeService
from .webhook_reconciler import WebhookReconciler

__all__ = [
    "StripeClient",
    "get_billing_client",
    "SubscriptionService",
    "PlanChangeService",
    "WebhookReconciler",
]
