"""Stripe subscription endpoints - checkout, billing portal and cancellation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.routes.auth.auth import get_current_user
from app.core.errors import BillingError
from app.core.logging_config import get_logger
from app.core.response import success_response, ResponseModel
from app.db.deps import get_db
from app.models.user import User
from app.schemas.billing.billing_schema import BillingPortalRequest, CheckoutRequest, ProcessCheckoutRequest
from app.services.payments.stripe_client import StripeClient, get_billing_client
from app.services.payments.subscription_service import SubscriptionService
from app.utils.datetime_utils import ensure_utc

logger = get_logger(__name__)
router = APIRouter(prefix="/stripe", tags=["payments", "stripe"])


@router.post("/checkout", response_model=ResponseModel)
async def create_checkout(
    req: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Create a Stripe checkout session for the selected subjects.

    Response:
        - sessionId: Stripe checkout session id
        - url: URL to redirect the user to for payment
    """
    logger.info(f"Checkout requested: user={current_user.id}, subjects={len(req.subject_ids)}")
    try:
        data = await SubscriptionService(billing).create_checkout(
            db,
            current_user,
            req.subject_ids,
            success_url=req.success_url,
            cancel_url=req.cancel_url,
        )
        return success_response(msg="Checkout session created", data=data)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Checkout failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create checkout session")


@router.post("/process-checkout", response_model=ResponseModel)
async def process_checkout(
    req: ProcessCheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Activate the subscription once the user returns from a paid checkout.

    The checkout webhook does the same work; calling this first only makes
    the subjects available before the webhook arrives.
    """
    try:
        data = await SubscriptionService(billing).process_checkout(db, current_user, req.session_id)
        return success_response(msg="Subscription activated", data=data)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Processing checkout failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process checkout")


@router.post("/billing-portal", response_model=ResponseModel)
async def billing_portal(
    req: Optional[BillingPortalRequest] = Body(default=None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Get a Stripe Customer Portal URL (update card, view invoices)."""
    try:
        url = await SubscriptionService(billing).get_payment_portal_url(
            db, current_user.id, return_url=req.return_url if req else None
        )
        return success_response(msg="Payment portal URL generated", data={"url": url})
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Failed to get payment portal for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate payment portal URL")


def _cancellation_payload(subscription) -> dict:
    period_end = ensure_utc(subscription.current_period_end)
    return {
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "currentPeriodEnd": period_end.isoformat() if period_end else None,
    }


@router.post("/cancel-subscription", response_model=ResponseModel)
async def cancel_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Stop renewal at the end of the current period. Access continues until then."""
    try:
        subscription = await SubscriptionService(billing).cancel_subscription(db, current_user.id)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Cancellation failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to cancel subscription")

    return success_response(
        msg="Subscription will be cancelled at the end of the current billing period",
        data=_cancellation_payload(subscription),
    )


@router.post("/reactivate-subscription", response_model=ResponseModel)
async def reactivate_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Resume renewal of a subscription scheduled for cancellation."""
    try:
        subscription = await SubscriptionService(billing).reactivate_subscription(db, current_user.id)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Reactivation failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to reactivate subscription")

    return success_response(msg="Subscription reactivated", data=_cancellation_payload(subscription))
