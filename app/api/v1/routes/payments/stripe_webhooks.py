"""Stripe webhook handler - Process subscription events."""

from __future__ import annotations

import stripe
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.response import success_response, ResponseModel
from app.core.logging_config import get_logger
from app.db.deps import get_db
from app.services.payments.stripe_client import StripeClient, construct_webhook_event, get_billing_client
from app.services.payments.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)
router = APIRouter(prefix="/stripe", tags=["webhooks"])


@router.post("/webhook", response_model=ResponseModel)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Handle Stripe webhook events.

    Supported events:
    - checkout.session.completed: Create the subscription and grant subjects
    - customer.subscription.updated: Sync status, period and scheduled cancellation
    - customer.subscription.deleted: Cancel locally and revoke access
    - invoice.payment_succeeded: Reactivate and apply changes scheduled for renewal
    - invoice.payment_failed: Mark the subscription past due
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        logger.warning("Stripe webhook: Missing signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError:
        logger.error("Stripe webhook: Invalid payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Stripe webhook: Invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    logger.info(f"Stripe webhook received: {event_type}")

    try:
        outcome = await WebhookReconciler(billing).handle_event(db, event)
        return success_response(msg="Webhook processed", data=outcome)
    except Exception as e:
        logger.error(f"Stripe webhook processing failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
