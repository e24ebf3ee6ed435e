"""Subscription service - checkout, activation and cancellation for Stripe subscriptions."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from app.core.logging_config import get_logger
from app.models.subscription import Subscription
from app.models.user import User
from app.services.payments.stripe_client import StripeClient, period_bounds
from app.services.pricing.calculator import calculate_price, line_items_for
from app.services.subscription_access import (
    add_subject_grants,
    ensure_subjects_exist,
    get_user_subscription,
    normalize_subject_ids,
)
from app.utils.enums import SubscriptionStatus

logger = get_logger(__name__)


class SubscriptionService:
    """Subscription lifecycle around the Stripe customer and subscription objects."""

    def __init__(self, billing: StripeClient):
        self.billing = billing

    async def create_checkout(
        self,
        db: AsyncSession,
        user: User,
        subject_ids: Sequence,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a Stripe checkout session for the selected subjects.

        Args:
            db: Database session
            user: Current user
            subject_ids: Subjects to grant once the payment succeeds
            success_url: Optional custom success URL
            cancel_url: Optional custom cancel URL

        Returns:
            Dictionary with sessionId, url, subjectCount and price
        """
        selected = normalize_subject_ids(subject_ids)
        if not selected:
            raise InvalidArgumentError("Select at least one subject")
        await ensure_subjects_exist(db, selected)

        existing = await get_user_subscription(db, user.id)
        if existing is not None and existing.status in (SubscriptionStatus.active, SubscriptionStatus.past_due):
            raise ConflictError("You already have an active subscription, change your plan instead")

        frontend_base = (settings.FRONTEND_APP_URL or settings.APP_URL).rstrip('/')
        if not success_url:
            success_url = f"{frontend_base}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
        if not cancel_url:
            cancel_url = f"{frontend_base}/pricing?checkout=cancelled"

        customer_id = existing.stripe_customer_id if existing is not None else None
        if not customer_id:
            customer_id = self.billing.create_customer(
                email=user.email,
                name=user.name,
                metadata={"userId": str(user.id)},
            )

        price = calculate_price(len(selected))
        metadata = {
            "userId": str(user.id),
            "selectedSubjects": json.dumps(selected),
            "subjectCount": str(len(selected)),
            "customPrice": str(price),
        }

        session = self.billing.create_checkout_session(
            customer_id=customer_id,
            line_items=line_items_for(len(selected)),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        logger.info(f"Stripe checkout created: session={session['id']}, user={user.id}, subjects={len(selected)}")

        return {
            "sessionId": session["id"],
            "url": session["url"],
            "subjectCount": len(selected),
            "price": float(price),
        }

    async def activate_subscription(
        self,
        db: AsyncSession,
        user_id: str,
        subject_ids: Sequence[str],
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        custom_price: Optional[Decimal] = None,
        stripe_price_id: Optional[str] = None,
    ) -> Subscription:
        """Create or refresh the user's subscription after a completed checkout.

        Safe to call twice for the same checkout: the row is upserted on the
        user id and grants that already exist are skipped. A subscription Stripe
        already deleted is never reactivated by its own late checkout.
        """
        selected = normalize_subject_ids(subject_ids)
        await ensure_subjects_exist(db, selected)

        subscription = await get_user_subscription(db, user_id, for_update=True)
        if (
            subscription is not None
            and subscription.status == SubscriptionStatus.canceled
            and subscription.stripe_subscription_id == stripe_subscription_id
        ):
            logger.info(f"Checkout for ended Stripe subscription {stripe_subscription_id} ignored")
            return subscription

        if subscription is None:
            subscription = Subscription(id=uuid.uuid4(), user_id=user_id)
            db.add(subscription)
            logger.info(f"Creating subscription for user {user_id}")
        else:
            logger.info(f"Refreshing existing subscription {subscription.id} for user {user_id}")

        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.stripe_customer_id = stripe_customer_id or subscription.stripe_customer_id
        subscription.stripe_price_id = stripe_price_id or settings.STRIPE_PRICE_ID_FIRST_SUBJECT or None
        subscription.status = SubscriptionStatus.active
        subscription.subject_count = len(selected)
        subscription.custom_price = custom_price if custom_price is not None else calculate_price(len(selected))
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = False

        added = await add_subject_grants(db, user_id, selected)
        await db.commit()

        logger.info(
            f"Subscription activated: user={user_id}, stripe_subscription={stripe_subscription_id}, "
            f"subjects={len(selected)}, new_grants={added}, period_end={period_end}"
        )
        return subscription

    async def activate_from_checkout(self, db: AsyncSession, session: Dict[str, Any]) -> Optional[Subscription]:
        """Activate the subscription a completed checkout session paid for.

        Reads the selection from the session metadata written by
        ``create_checkout``. Sessions whose metadata cannot be used are logged
        and skipped, returning None.
        """
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        stripe_subscription_id = session.get("subscription")
        if stripe_subscription_id and not isinstance(stripe_subscription_id, str):
            stripe_subscription_id = stripe_subscription_id.get("id")

        if not user_id or not stripe_subscription_id:
            logger.warning(f"Checkout session {session.get('id')} missing userId or subscription: {metadata}")
            return None

        try:
            selected = json.loads(metadata.get("selectedSubjects") or "[]")
        except ValueError:
            logger.error(f"Checkout session {session.get('id')} has unreadable selectedSubjects metadata")
            return None

        custom_price = None
        if metadata.get("customPrice"):
            try:
                custom_price = Decimal(metadata["customPrice"])
            except InvalidOperation:
                logger.warning(f"Ignoring invalid customPrice {metadata['customPrice']!r} in checkout metadata")

        if await db.get(User, user_id) is None:
            logger.warning(f"Checkout completed for unknown user {user_id}")
            return None

        stripe_subscription = self.billing.retrieve_subscription(stripe_subscription_id)
        period_start, period_end = period_bounds(stripe_subscription)

        return await self.activate_subscription(
            db,
            user_id=user_id,
            subject_ids=selected,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=session.get("customer"),
            period_start=period_start,
            period_end=period_end,
            custom_price=custom_price,
        )

    async def process_checkout(self, db: AsyncSession, user: User, session_id: Optional[str]) -> Dict[str, Any]:
        """Activate right after the checkout redirect instead of waiting for the webhook.

        Whichever of the two runs second finds the subscription already
        active with its grants in place and changes nothing.

        Raises:
            InvalidArgumentError: Missing session id, unpaid session or no subscription on it
            ForbiddenError: The session was created for another user
        """
        if not session_id:
            raise InvalidArgumentError("Checkout session id is required")

        session = self.billing.retrieve_checkout_session(session_id)
        if session.get("payment_status") != "paid":
            logger.info(f"Checkout session {session_id} not paid yet: {session.get('payment_status')}")
            raise InvalidArgumentError("Payment not completed")
        if not session.get("subscription"):
            raise InvalidArgumentError("No subscription found for this checkout")

        owner = (session.get("metadata") or {}).get("userId")
        if owner != str(user.id):
            logger.warning(f"User {user.id} tried to process checkout session {session_id} of user {owner}")
            raise ForbiddenError("This checkout session belongs to another account")

        subscription = await self.activate_from_checkout(db, session)
        if subscription is None:
            raise InvalidArgumentError("Checkout session is missing its subject selection")

        logger.info(f"Checkout {session_id} processed for user {user.id}: subscription={subscription.id}")
        return {
            "subscriptionId": str(subscription.id),
            "status": subscription.status.value,
            "subjectCount": subscription.subject_count,
            "price": float(subscription.custom_price),
        }

    async def _get_active_subscription(self, db: AsyncSession, user_id: str) -> Subscription:
        subscription = await get_user_subscription(db, user_id, for_update=True)
        if subscription is None or not subscription.stripe_subscription_id:
            raise NotFoundError("No active subscription found")
        if subscription.status == SubscriptionStatus.canceled:
            raise ConflictError("Subscription is already canceled")
        return subscription

    async def cancel_subscription(self, db: AsyncSession, user_id: str) -> Subscription:
        """Schedule cancellation at period end. Access continues until then."""
        subscription = await self._get_active_subscription(db, user_id)
        if subscription.cancel_at_period_end:
            logger.info(f"Subscription {subscription.id} already scheduled for cancellation")
            return subscription

        self.billing.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
        subscription.cancel_at_period_end = True
        await db.commit()

        logger.info(f"Subscription cancelled at period end: id={subscription.id}, user={user_id}")
        return subscription

    async def reactivate_subscription(self, db: AsyncSession, user_id: str) -> Subscription:
        """Undo a scheduled cancellation before the period ends."""
        subscription = await self._get_active_subscription(db, user_id)
        if not subscription.cancel_at_period_end:
            raise ConflictError("Subscription is not scheduled for cancellation")

        self.billing.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
        subscription.cancel_at_period_end = False
        await db.commit()

        logger.info(f"Subscription reactivated: id={subscription.id}, user={user_id}")
        return subscription

    async def get_payment_portal_url(
        self,
        db: AsyncSession,
        user_id: str,
        return_url: Optional[str] = None,
    ) -> str:
        """Get the Stripe Customer Portal URL (update card, view invoices).

        Raises:
            NotFoundError: If the user has no Stripe customer yet
        """
        result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
        subscription = result.scalars().first()
        if subscription is None or not subscription.stripe_customer_id:
            logger.warning(f"No Stripe customer for user {user_id}")
            raise NotFoundError("No billing account found")

        if not return_url:
            return_url = f"{(settings.FRONTEND_APP_URL or settings.APP_URL).rstrip('/')}/dashboard/settings"

        portal_url = self.billing.create_customer_portal_session(
            customer_id=subscription.stripe_customer_id,
            return_url=return_url,
        )
        logger.info(f"Generated Stripe portal for user {user_id}")
        return portal_url
