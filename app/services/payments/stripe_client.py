"""Stripe API client - Clean wrapper for Stripe operations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Iterable, Tuple
import stripe

from app.core.config import settings
from app.core.errors import ExternalServiceError
from app.core.logging_config import get_logger
from app.services.pricing.calculator import LineItem, price_from_minor
from app.utils.datetime_utils import from_unix_timestamp
from app.utils.enums import ProrationBehavior

logger = get_logger(__name__)


@dataclass
class ProrationCharge:
    """Outcome of trying to collect the invoice produced by an upgrade."""
    invoice_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0.00")

    @property
    def charged(self) -> bool:
        return self.amount_paid > 0


def _is_proration_line(line: Dict[str, Any]) -> bool:
    # Older API versions flag the line directly, newer ones nest it under parent
    if line.get("proration"):
        return True
    parent = line.get("parent") or {}
    details = parent.get("subscription_item_details") or {}
    return bool(details.get("proration"))


def period_bounds(stripe_subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period of a Stripe subscription.

    Newer API versions moved the period onto each subscription item.
    """
    start = stripe_subscription.get("current_period_start")
    end = stripe_subscription.get("current_period_end")
    if start is None or end is None:
        items = (stripe_subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start", start)
            end = items[0].get("current_period_end", end)
    return from_unix_timestamp(start), from_unix_timestamp(end)


def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify a webhook signature and parse the event into plain dicts.

    Raises:
        ValueError: If the payload is not valid JSON
        stripe.SignatureVerificationError: If the signature does not match
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise stripe.SignatureVerificationError("Webhook secret not configured", sig_header)
    stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


class StripeClient:
    """Clean wrapper for Stripe API calls.

    Every method converts ``stripe.StripeError`` into ``ExternalServiceError``
    so callers deal with a single failure kind for the billing provider.
    """

    def __init__(self):
        """Initialize Stripe with API key."""
        if not settings.STRIPE_SECRET_KEY:
            raise RuntimeError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        logger.info("Stripe client initialized")

    def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Retrieve a Stripe subscription by ID."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            logger.info(f"Retrieved Stripe subscription: {subscription_id}, status={subscription['status']}")
            return subscription
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve Stripe subscription {subscription_id}: {e}")
            raise ExternalServiceError(f"Failed to retrieve subscription: {e.user_message or e}") from e

    def replace_line_items(
        self,
        subscription_id: str,
        line_items: Iterable[LineItem],
        proration_behavior: ProrationBehavior,
    ) -> stripe.Subscription:
        """Swap every item on the subscription for ``line_items``.

        Args:
            subscription_id: Stripe subscription ID
            line_items: Target SKUs and quantities
            proration_behavior: ``always_invoice`` bills the difference now,
                ``none`` leaves the current period untouched

        Returns:
            Updated Stripe subscription object
        """
        current = self.retrieve_subscription(subscription_id)
        items = [{"id": item["id"], "deleted": True} for item in current["items"]["data"]]
        items.extend(item.to_stripe() for item in line_items)

        try:
            logger.info(
                f"Replacing Stripe subscription items: subscription={subscription_id}, "
                f"items={items}, proration_behavior={proration_behavior.value}"
            )
            updated = stripe.Subscription.modify(
                subscription_id,
                items=items,
                proration_behavior=proration_behavior.value,
            )
            logger.info(f"Stripe subscription {subscription_id} items replaced")
            return updated
        except stripe.StripeError as e:
            logger.error(f"Failed to update Stripe subscription {subscription_id}: {e}")
            raise ExternalServiceError(f"Failed to update subscription: {e.user_message or e}") from e

    def collect_proration_invoice(
        self,
        customer_id: str,
        latest_invoice_id: Optional[str] = None,
    ) -> ProrationCharge:
        """Pay the invoice an ``always_invoice`` upgrade just produced.

        Failures are logged and reported as "not charged"; Stripe will
        still collect the amount on its own retry schedule.
        """
        try:
            invoice = None
            if latest_invoice_id:
                invoice = stripe.Invoice.retrieve(latest_invoice_id)
            if invoice is None or invoice["status"] not in ("open", "paid"):
                invoice = self._find_recent_proration_invoice(customer_id)

            if invoice is None:
                logger.info("No proration invoice found, charge will appear on next regular invoice")
                return ProrationCharge()

            if invoice["status"] == "open" and invoice["amount_due"] > 0:
                logger.info(f"Found open proration invoice {invoice['id']}, attempting to pay")
                try:
                    paid = stripe.Invoice.pay(invoice["id"])
                except stripe.StripeError as e:
                    logger.error(f"Error paying proration invoice {invoice['id']}: {e}")
                    return ProrationCharge(invoice_id=invoice["id"])
                logger.info(f"Proration invoice {paid['id']} paid: amount_paid={paid['amount_paid']}")
                return ProrationCharge(invoice_id=paid["id"], amount_paid=price_from_minor(paid["amount_paid"]))

            if invoice["status"] == "paid":
                return ProrationCharge(invoice_id=invoice["id"], amount_paid=price_from_minor(invoice["amount_paid"]))

            return ProrationCharge(invoice_id=invoice["id"])

        except stripe.StripeError as e:
            logger.error(f"Error processing immediate charge for customer {customer_id}: {e}")
            return ProrationCharge()

    def _find_recent_proration_invoice(self, customer_id: str):
        open_invoices = stripe.Invoice.list(customer=customer_id, limit=5, status="open")
        for invoice in open_invoices["data"]:
            if invoice["amount_due"] > 0 and any(_is_proration_line(line) for line in invoice["lines"]["data"]):
                return invoice

        paid_invoices = stripe.Invoice.list(customer=customer_id, limit=5, status="paid")
        for invoice in paid_invoices["data"]:
            if any(_is_proration_line(line) for line in invoice["lines"]["data"]):
                return invoice
        return None

    def create_customer(self, email: Optional[str], name: Optional[str], metadata: Dict[str, str]) -> str:
        """Create a Stripe customer and return its ID."""
        try:
            customer = stripe.Customer.create(email=email, name=name, metadata=metadata)
            logger.info(f"Created Stripe customer {customer['id']} for metadata={metadata}")
            return customer["id"]
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe customer: {e}")
            raise ExternalServiceError(f"Failed to create customer: {e.user_message or e}") from e

    def create_checkout_session(
        self,
        customer_id: str,
        line_items: Iterable[LineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> stripe.checkout.Session:
        """Create a subscription-mode Stripe checkout session.

        Args:
            customer_id: Stripe customer to attach the subscription to
            line_items: SKUs for the selected subject count
            success_url: URL to redirect after successful payment
            cancel_url: URL to redirect if user cancels
            metadata: userId, selectedSubjects, subjectCount, customPrice

        Returns:
            Stripe checkout session object
        """
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[item.to_stripe() for item in line_items],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
            logger.info(f"Stripe checkout created: session_id={session['id']}")
            return session
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed: {e}")
            raise ExternalServiceError(f"Failed to create checkout session: {e.user_message or e}") from e

    def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        """Retrieve a checkout session to confirm its payment after the redirect."""
        try:
            session = stripe.checkout.Session.retrieve(session_id)
            logger.info(
                f"Retrieved Stripe checkout session: {session_id}, payment_status={session['payment_status']}"
            )
            return session
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve Stripe checkout session {session_id}: {e}")
            raise ExternalServiceError(f"Failed to retrieve checkout session: {e.user_message or e}") from e

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> stripe.Subscription:
        """Schedule (or unschedule) cancellation at the end of the current period."""
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
            logger.info(f"Stripe subscription {subscription_id} cancel_at_period_end={cancel}")
            return subscription
        except stripe.StripeError as e:
            logger.error(f"Failed to update cancel_at_period_end on {subscription_id}: {e}")
            raise ExternalServiceError(f"Failed to update subscription: {e.user_message or e}") from e

    def create_customer_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a Stripe Customer Portal session and return its URL."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            logger.info(f"Created Stripe Customer Portal session for customer: {customer_id}")
            return session["url"]
        except stripe.StripeError as e:
            logger.error(f"Failed to create Customer Portal session for {customer_id}: {e}")
            raise ExternalServiceError(f"Failed to open billing portal: {e.user_message or e}") from e


def get_billing_client() -> StripeClient:
    """FastAPI dependency providing the billing provider client."""
    return StripeClient()
