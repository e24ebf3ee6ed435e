"""Stripe webhook reconciler - keeps local subscription state in line with Stripe.

Stripe delivers events at least once and not necessarily in order. Each event
id is recorded in ``processed_stripe_events`` after its handler succeeds, so a
redelivery is skipped; handlers themselves only upsert or look for open rows,
which keeps a replay harmless even when the ledger write was lost.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import get_logger
from app.models.pending_change import PendingSubscriptionChange
from app.models.processed_stripe_event import ProcessedStripeEvent
from app.models.subscription import Subscription
from app.services.payments.stripe_client import StripeClient, period_bounds
from app.services.payments.subscription_service import SubscriptionService
from app.services.pricing.calculator import line_items_for
from app.services.subscription_access import (
    apply_billed_entitlement,
    get_open_pending_changes,
    get_subscription_by_stripe_id,
    remove_subject_grants,
    replace_subject_grants,
)
from app.utils.datetime_utils import from_unix_timestamp
from app.utils.enums import ChangeTiming, PendingChangeStatus, ProrationBehavior, SubscriptionStatus

logger = get_logger(__name__)

# Invoices that renew the subscription; proration and manual invoices never apply pending changes
RENEWAL_BILLING_REASONS = ("subscription_cycle",)


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("start") and period.get("end"):
            return from_unix_timestamp(period["start"]), from_unix_timestamp(period["end"])
    return None, None


class WebhookReconciler:
    """Dispatches verified Stripe events to their handlers.

    Usage:
        reconciler = WebhookReconciler(billing_client)
        outcome = await reconciler.handle_event(db, event)
    """

    def __init__(self, billing: StripeClient):
        self.billing = billing
        self.subscriptions = SubscriptionService(billing)
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    async def handle_event(self, db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
        event_id = event["id"]
        event_type = event["type"]

        if await self._is_event_processed(db, event_id):
            logger.info(f"Stripe webhook duplicate skipped: {event_id} ({event_type})")
            return {"event_type": event_type, "duplicate": True, "handled": False}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Stripe webhook: Unhandled event type {event_type}")
            return {"event_type": event_type, "duplicate": False, "handled": False}

        logger.info(f"Processing Stripe event {event_id} ({event_type})")
        await handler(db, event["data"]["object"])
        recorded = await self._record_processed_event(db, event_id, event_type)
        return {"event_type": event_type, "duplicate": not recorded, "handled": True}

    async def _is_event_processed(self, db: AsyncSession, event_id: str) -> bool:
        result = await db.execute(
            select(ProcessedStripeEvent.id).where(ProcessedStripeEvent.event_id == event_id)
        )
        return result.scalars().first() is not None

    async def _record_processed_event(self, db: AsyncSession, event_id: str, event_type: str) -> bool:
        db.add(ProcessedStripeEvent(event_id=event_id, event_type=event_type))
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event finished first
            await db.rollback()
            logger.info(f"Stripe event {event_id} was recorded concurrently")
            return False
        return True

    @staticmethod
    def _is_ended(subscription: Subscription, event_type: str) -> bool:
        # Deletion is final for a Stripe subscription; only a new checkout revives the row
        if subscription.status != SubscriptionStatus.canceled:
            return False
        logger.info(
            f"Ignoring {event_type} for canceled subscription {subscription.id} "
            f"({subscription.stripe_subscription_id})"
        )
        return True

    async def _handle_checkout_completed(self, db: AsyncSession, session: Dict[str, Any]) -> None:
        """checkout.session.completed - create or refresh the subscription and its grants."""
        await self.subscriptions.activate_from_checkout(db, session)

    async def _handle_subscription_updated(self, db: AsyncSession, stripe_subscription: Dict[str, Any]) -> None:
        """customer.subscription.updated - refresh status, period and scheduled cancellation."""
        subscription = await get_subscription_by_stripe_id(db, stripe_subscription["id"])
        if subscription is None:
            logger.warning(f"Subscription update for unknown Stripe subscription {stripe_subscription['id']}")
            return
        if self._is_ended(subscription, "customer.subscription.updated"):
            return

        status = stripe_subscription.get("status")
        try:
            subscription.status = SubscriptionStatus(status)
        except ValueError:
            logger.warning(f"Unknown Stripe subscription status {status!r}, keeping {subscription.status}")

        period_start, period_end = period_bounds(stripe_subscription)
        if period_start and period_end:
            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
        subscription.cancel_at_period_end = bool(stripe_subscription.get("cancel_at_period_end"))

        await db.commit()
        logger.info(
            f"Subscription {subscription.id} synced: status={subscription.status}, "
            f"cancel_at_period_end={subscription.cancel_at_period_end}"
        )

    async def _handle_subscription_deleted(self, db: AsyncSession, stripe_subscription: Dict[str, Any]) -> None:
        """customer.subscription.deleted - cancel locally and revoke access."""
        subscription = await get_subscription_by_stripe_id(db, stripe_subscription["id"])
        if subscription is None:
            logger.warning(f"Deletion for unknown Stripe subscription {stripe_subscription['id']}")
            return

        subscription.status = SubscriptionStatus.canceled
        subscription.cancel_at_period_end = False
        await remove_subject_grants(db, subscription.user_id)
        for change in await get_open_pending_changes(db, subscription.id):
            change.transition_to(PendingChangeStatus.cancelled)

        await db.commit()
        logger.info(f"Subscription {subscription.id} canceled and access revoked for user {subscription.user_id}")

    async def _handle_invoice_payment_failed(self, db: AsyncSession, invoice: Dict[str, Any]) -> None:
        stripe_subscription_id = invoice_subscription_id(invoice)
        subscription = await get_subscription_by_stripe_id(db, stripe_subscription_id) if stripe_subscription_id else None
        if subscription is None:
            logger.warning(f"Payment failure for unknown subscription on invoice {invoice.get('id')}")
            return
        if self._is_ended(subscription, "invoice.payment_failed"):
            return

        subscription.status = SubscriptionStatus.past_due
        await db.commit()
        logger.warning(f"Subscription {subscription.id} is past due after invoice {invoice.get('id')} failed")

    async def _handle_invoice_paid(self, db: AsyncSession, invoice: Dict[str, Any]) -> None:
        """invoice.payment_succeeded - reactivate and apply changes scheduled for renewal."""
        stripe_subscription_id = invoice_subscription_id(invoice)
        subscription = await get_subscription_by_stripe_id(db, stripe_subscription_id) if stripe_subscription_id else None
        if subscription is None:
            logger.warning(f"Payment for unknown subscription on invoice {invoice.get('id')}")
            return
        if self._is_ended(subscription, "invoice.payment_succeeded"):
            return

        subscription_pk = subscription.id
        subscription.status = SubscriptionStatus.active
        period_start, period_end = invoice_period(invoice)
        billing_reason = invoice.get("billing_reason")
        if period_start and period_end and billing_reason in RENEWAL_BILLING_REASONS:
            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
        await db.commit()

        if billing_reason is not None and billing_reason not in RENEWAL_BILLING_REASONS:
            logger.info(f"Invoice {invoice.get('id')} billing_reason={billing_reason}, pending changes left alone")
            return

        changes = await get_open_pending_changes(db, subscription_pk)
        for change_id in [c.id for c in changes if c.timing == ChangeTiming.next_period]:
            await self._apply_pending_change(db, subscription_pk, change_id)

    async def _apply_pending_change(self, db: AsyncSession, subscription_pk, change_id) -> None:
        """Swap grants to the pending target and mark the change applied, or failed."""
        try:
            subscription = await db.get(Subscription, subscription_pk)
            change = await db.get(PendingSubscriptionChange, change_id)
            if change is None or not change.is_open:
                return

            target = list(change.new_subject_ids or [])
            if subscription.subject_count != len(target):
                # The billed count drifted from the pending target; renew what was promised
                self.billing.replace_line_items(
                    subscription.stripe_subscription_id, line_items_for(len(target)), ProrationBehavior.none
                )
                apply_billed_entitlement(subscription, len(target))

            await replace_subject_grants(db, subscription.user_id, target)
            change.transition_to(PendingChangeStatus.applied)
            await db.commit()
            logger.info(f"Applied pending change {change_id}: user now has {len(target)} subjects")
        except Exception as e:
            logger.error(f"Failed to apply pending change {change_id}: {e}", exc_info=True)
            await db.rollback()
            change = await db.get(PendingSubscriptionChange, change_id)
            if change is not None and change.is_open:
                change.transition_to(PendingChangeStatus.failed)
                await db.commit()
