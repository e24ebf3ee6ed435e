"""Plan change service - subject upgrades, deferred downgrades and their undo.

Mid-cycle behavior:
- Upgrades apply immediately. Stripe line items are replaced with
  ``always_invoice`` proration and the resulting invoice is charged right away;
  subject grants change in the same request.
- Downgrades are deferred. Stripe line items are replaced without proration
  (no credit), grants stay untouched until renewal and a pending change row
  records the subjects the user keeps. The subscription row already carries
  the post-renewal count and price.
- Selecting subjects again while a downgrade is pending merges them into the
  pending target. Subjects the user already paid for this period are restored
  without a new proration charge and without touching grants.

Every billing provider call happens before the local writes of the same step,
and local writes are committed once at the end. A provider failure aborts the
operation with nothing written locally; a crash after the provider call leaves
Stripe ahead of the database until the next webhook resynchronizes it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from app.core.logging_config import get_logger
from app.models.pending_change import PendingSubscriptionChange
from app.models.subscription import Subscription
from app.services.payments.stripe_client import ProrationCharge, StripeClient
from app.services.pricing.calculator import CENT, calculate_price, line_items_for
from app.services.subscription_access import (
    add_subject_grants,
    apply_billed_entitlement,
    ensure_subjects_exist,
    get_granted_subject_ids,
    get_open_pending_downgrade,
    get_user_subscription,
    normalize_subject_ids,
    ordered_union,
    replace_subject_grants,
)
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime
from app.utils.enums import ChangeTiming, ChangeType, PendingChangeStatus, ProrationBehavior

logger = get_logger(__name__)


@dataclass
class PlanTarget:
    """What a requested subject selection means against today's state.

    ``immediate_target_ids`` is what the user can open right after the change,
    ``renewal_ids`` is what the next renewal bills for. They only differ while
    a downgrade is pending.
    """
    granted_ids: list[str]
    requested_ids: list[str]
    added_ids: list[str]
    immediate_target_ids: list[str]
    renewal_ids: list[str]
    current_count: int
    current_price: Decimal
    change_type: ChangeType
    pending: Optional[PendingSubscriptionChange] = None

    @property
    def new_count(self) -> int:
        return len(self.immediate_target_ids)

    @property
    def new_price(self) -> Decimal:
        return calculate_price(self.new_count)

    @property
    def renewal_count(self) -> int:
        return len(self.renewal_ids)

    @property
    def renewal_price(self) -> Decimal:
        return calculate_price(self.renewal_count)

    @property
    def paid_count(self) -> int:
        # Grants are only reduced at renewal, so they reflect what this period paid for
        return max(self.current_count, len(self.granted_ids))


@dataclass
class ChangeResult:
    success: bool
    message: str
    change_type: ChangeType
    new_subject_count: int
    new_price: Decimal
    subscription_id: Optional[str] = None
    timing: ChangeTiming = ChangeTiming.immediate
    immediate_charge_amount: Decimal = Decimal("0.00")
    invoice_id: Optional[str] = None
    pending_change_id: Optional[str] = None

    @property
    def charged_immediately(self) -> bool:
        return self.immediate_charge_amount > 0

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "message": self.message,
            "changeType": self.change_type.value,
            "timing": self.timing.value,
            "newSubjectCount": self.new_subject_count,
            "newPrice": float(self.new_price),
            "subscriptionId": self.subscription_id,
        }
        if self.change_type == ChangeType.upgrade:
            data["immediateChargeAmount"] = float(self.immediate_charge_amount)
            data["chargedImmediately"] = self.charged_immediately
            data["invoiceId"] = self.invoice_id
        if self.pending_change_id:
            data["pendingChangeId"] = self.pending_change_id
        return data


@dataclass
class Preview:
    current_price: Decimal
    new_price: Decimal
    proration_amount: Decimal
    change_type: ChangeType
    effective_date: datetime
    new_subject_count: int
    estimated: bool = False

    @property
    def is_upgrade(self) -> bool:
        return self.change_type == ChangeType.upgrade

    @property
    def is_downgrade(self) -> bool:
        return self.change_type == ChangeType.downgrade

    def to_dict(self) -> dict:
        data = {
            "currentPrice": float(self.current_price),
            "newPrice": float(self.new_price),
            "prorationAmount": float(self.proration_amount),
            "isUpgrade": self.is_upgrade,
            "isDowngrade": self.is_downgrade,
            "changeType": self.change_type.value,
            "effectiveDate": self.effective_date.isoformat(),
            "newSubjectCount": self.new_subject_count,
        }
        if self.estimated:
            data["estimated"] = True
        return data


@dataclass
class RestoreResult:
    message: str
    pending_change_resolved: bool
    new_subject_count: int
    new_price: Decimal
    restored_subject_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "pendingChangeResolved": self.pending_change_resolved,
            "newSubjectCount": self.new_subject_count,
            "newPrice": float(self.new_price),
            "restoredSubjectIds": self.restored_subject_ids,
        }


def classify_change(current_count: int, new_count: int) -> ChangeType:
    if new_count > current_count:
        return ChangeType.upgrade
    if new_count < current_count:
        return ChangeType.downgrade
    return ChangeType.no_change


def plan_target(
    subscription: Subscription,
    granted_ids: Sequence[str],
    requested_ids: Sequence[str],
    pending: Optional[PendingSubscriptionChange] = None,
) -> PlanTarget:
    """Resolve a requested selection into immediate and renewal targets.

    Without a pending downgrade the request is the new plan as-is. With one,
    newly added subjects are granted on top of everything the user still has
    this period and join the pending target; subjects already granted stay out
    of it unless nothing new was added.
    """
    granted = list(granted_ids)
    requested = list(requested_ids)
    added = [s for s in requested if s not in granted]

    current_count = subscription.subject_count or 0
    current_price = Decimal(
        subscription.custom_price if subscription.custom_price is not None else calculate_price(current_count)
    ).quantize(CENT)

    if pending is None:
        immediate = requested
        renewal = requested
        change_type = classify_change(current_count, len(requested))
    elif added:
        immediate = ordered_union(granted, added)
        renewal = ordered_union(pending.new_subject_ids or [], added)
        change_type = classify_change(current_count, len(immediate))
    else:
        # Reselecting within current grants only moves the pending target
        change_type = classify_change(current_count, len(requested))
        if change_type == ChangeType.upgrade:
            immediate = granted
            renewal = ordered_union(pending.new_subject_ids or [], requested)
        else:
            immediate = requested
            renewal = requested

    return PlanTarget(
        granted_ids=granted,
        requested_ids=requested,
        added_ids=added,
        immediate_target_ids=immediate,
        renewal_ids=renewal,
        current_count=current_count,
        current_price=current_price,
        change_type=change_type,
        pending=pending,
    )


def period_progress(subscription: Subscription, now: Optional[datetime] = None) -> float:
    """Fraction of the current billing period already elapsed, clamped to [0, 1]."""
    start = ensure_utc(subscription.current_period_start)
    end = ensure_utc(subscription.current_period_end)
    if not start or not end:
        return 0.0

    total = (end - start).total_seconds()
    if total <= 0:
        return 1.0
    now = ensure_utc(now) or get_current_utc_datetime()
    elapsed = (now - start).total_seconds()
    return max(0.0, min(1.0, elapsed / total))


def estimate_proration(target: PlanTarget, progress: float) -> Decimal:
    """Amount billed now for an upgrade; downgrades never produce a credit."""
    if target.change_type != ChangeType.upgrade or target.new_count <= target.paid_count:
        return Decimal("0.00")
    baseline = max(target.current_price, calculate_price(target.paid_count))
    remaining = Decimal(str(1 - progress))
    return ((target.new_price - baseline) * remaining).quantize(CENT)


class PlanChangeService:
    """Orchestrates subject plan changes between the database and Stripe.

    Usage:
        service = PlanChangeService(billing_client)

        preview = await service.preview_plan_change(db, user_id, subject_ids)
        result = await service.change_plan(db, user_id, subject_ids)
    """

    def __init__(self, billing: StripeClient):
        self.billing = billing

    async def _load_subscription(self, db: AsyncSession, user_id: str, for_update: bool = False) -> Subscription:
        subscription = await get_user_subscription(db, user_id, for_update=for_update)
        if subscription is None or not subscription.stripe_subscription_id:
            raise NotFoundError("No active subscription found")
        return subscription

    async def _resolve_request(self, db: AsyncSession, subject_ids: Sequence) -> list[str]:
        requested = normalize_subject_ids(subject_ids)
        if not requested:
            raise InvalidArgumentError("newSubjectIds is required and must be a non-empty array")
        await ensure_subjects_exist(db, requested)
        return requested

    async def _commit(self, db: AsyncSession, subscription_id) -> None:
        try:
            await db.commit()
        except StaleDataError as e:
            await db.rollback()
            logger.error(f"Concurrent update detected on subscription {subscription_id}: {e}")
            raise ConflictError("Subscription changed concurrently, please retry") from e

    async def _target_for(
        self, db: AsyncSession, subscription: Subscription, requested: list[str]
    ) -> PlanTarget:
        granted = await get_granted_subject_ids(db, subscription.user_id)
        pending = await get_open_pending_downgrade(db, subscription.id)
        return plan_target(subscription, granted, requested, pending)

    async def preview_plan_change(
        self,
        db: AsyncSession,
        user_id: str,
        subject_ids: Sequence,
        now: Optional[datetime] = None,
    ) -> Preview:
        """Price a selection without changing anything locally or at Stripe."""
        requested = await self._resolve_request(db, subject_ids)
        subscription = await self._load_subscription(db, user_id)
        target = await self._target_for(db, subscription, requested)
        now = ensure_utc(now) or get_current_utc_datetime()

        if target.change_type == ChangeType.no_change:
            return Preview(
                current_price=target.current_price,
                new_price=target.current_price,
                proration_amount=Decimal("0.00"),
                change_type=ChangeType.no_change,
                effective_date=now,
                new_subject_count=target.current_count,
            )

        effective_date = now
        if target.change_type == ChangeType.downgrade:
            effective_date = ensure_utc(subscription.current_period_end) or now

        estimated = False
        try:
            # Confirms the provider still knows this subscription; pricing itself is local
            self.billing.retrieve_subscription(subscription.stripe_subscription_id)
        except ExternalServiceError as e:
            logger.warning(f"Plan change preview for user {user_id} falling back to estimate: {e}")
            estimated = True

        proration = estimate_proration(target, period_progress(subscription, now))
        logger.info(
            f"Preview for user {user_id}: {target.current_count} -> {target.renewal_count} "
            f"({target.change_type.value}), proration={proration}, estimated={estimated}"
        )
        return Preview(
            current_price=target.current_price,
            new_price=target.renewal_price,
            proration_amount=proration,
            change_type=target.change_type,
            effective_date=effective_date,
            new_subject_count=target.renewal_count,
            estimated=estimated,
        )

    async def change_plan(
        self,
        db: AsyncSession,
        user_id: str,
        subject_ids: Sequence,
    ) -> ChangeResult:
        """Move the user to ``subject_ids``: upgrades now, downgrades at renewal."""
        requested = await self._resolve_request(db, subject_ids)
        subscription = await self._load_subscription(db, user_id, for_update=True)
        target = await self._target_for(db, subscription, requested)

        logger.info(
            f"Plan change for user {user_id}: current={target.current_count}, new={target.new_count}, "
            f"renewal={target.renewal_count}, granted={len(target.granted_ids)}, "
            f"pending={'yes' if target.pending is not None else 'no'}, type={target.change_type.value}"
        )

        if target.change_type == ChangeType.no_change:
            return ChangeResult(
                success=False,
                message="No changes detected in subject selection",
                change_type=ChangeType.no_change,
                new_subject_count=target.current_count,
                new_price=target.current_price,
                subscription_id=subscription.stripe_subscription_id,
            )

        subscription_pk = subscription.id
        if target.change_type == ChangeType.upgrade:
            result = await self._upgrade(db, subscription, target)
        else:
            result = await self._downgrade(db, subscription, target)

        await self._commit(db, subscription_pk)
        logger.info(f"Plan change committed for user {user_id}: {result.change_type.value} to {result.new_subject_count}")
        return result

    def _bill_upgrade(self, subscription: Subscription, target: PlanTarget) -> ProrationCharge:
        """Align Stripe with the renewal target, charging only beyond what was already paid."""
        stripe_id = subscription.stripe_subscription_id

        if target.new_count <= target.paid_count:
            self.billing.replace_line_items(stripe_id, line_items_for(target.renewal_count), ProrationBehavior.none)
            return ProrationCharge()

        if target.current_count < target.paid_count:
            # A pending downgrade lowered the billed count; put back what was paid first
            self.billing.replace_line_items(stripe_id, line_items_for(target.paid_count), ProrationBehavior.none)

        updated = self.billing.replace_line_items(
            stripe_id, line_items_for(target.new_count), ProrationBehavior.always_invoice
        )
        charge = self.billing.collect_proration_invoice(
            subscription.stripe_customer_id or updated.get("customer"),
            updated.get("latest_invoice"),
        )

        if target.renewal_count != target.new_count:
            # Renewal bills the pending target, not this period's access
            self.billing.replace_line_items(stripe_id, line_items_for(target.renewal_count), ProrationBehavior.none)
        return charge

    async def _upgrade(self, db: AsyncSession, subscription: Subscription, target: PlanTarget) -> ChangeResult:
        charge = self._bill_upgrade(subscription, target)

        apply_billed_entitlement(subscription, target.renewal_count)
        pending = target.pending
        if pending is None:
            await replace_subject_grants(db, subscription.user_id, target.immediate_target_ids)
        else:
            if target.added_ids:
                await add_subject_grants(db, subscription.user_id, target.added_ids)
            if set(target.renewal_ids) == set(target.immediate_target_ids):
                pending.transition_to(PendingChangeStatus.cancelled)
                logger.info(f"Pending downgrade {pending.id} fully reverted by upgrade")
            else:
                self._retarget_pending(pending, target.renewal_ids)
                logger.info(f"Pending downgrade {pending.id} merged to {target.renewal_count} subjects")

        if charge.charged:
            message = (
                f"Subscription upgraded successfully! You have been charged €{charge.amount_paid:.2f} "
                "for the remaining billing period."
            )
        elif target.new_count <= target.paid_count:
            message = "Subscription updated successfully! The restored subjects were already paid for this period."
        else:
            message = "Subscription upgraded successfully! The prorated amount will be added to your next invoice."

        return ChangeResult(
            success=True,
            message=message,
            change_type=ChangeType.upgrade,
            new_subject_count=target.renewal_count,
            new_price=target.renewal_price,
            subscription_id=subscription.stripe_subscription_id,
            immediate_charge_amount=charge.amount_paid,
            invoice_id=charge.invoice_id,
            pending_change_id=str(pending.id) if pending is not None else None,
        )

    async def _downgrade(self, db: AsyncSession, subscription: Subscription, target: PlanTarget) -> ChangeResult:
        if target.added_ids:
            raise InvalidArgumentError("A downgrade can only keep subjects you currently have")
        keep = target.renewal_ids

        self.billing.replace_line_items(
            subscription.stripe_subscription_id, line_items_for(len(keep)), ProrationBehavior.none
        )

        pending = target.pending
        if pending is not None:
            self._retarget_pending(pending, keep)
            pending.scheduled_date = subscription.current_period_end
            logger.info(f"Replaced target of pending downgrade {pending.id}: {len(keep)} subjects")
        else:
            pending = PendingSubscriptionChange(
                id=uuid.uuid4(),
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                change_type=ChangeType.downgrade,
                timing=ChangeTiming.next_period,
                new_subject_ids=list(keep),
                new_subject_count=len(keep),
                new_price=calculate_price(len(keep)),
                scheduled_date=subscription.current_period_end,
                status=PendingChangeStatus.pending,
            )
            db.add(pending)
            logger.info(f"Created pending downgrade for subscription {subscription.id}: {len(keep)} subjects")

        new_price = apply_billed_entitlement(subscription, len(keep))

        return ChangeResult(
            success=True,
            message=(
                "Subscription downgraded successfully! You'll keep access to all subjects until the end "
                "of your current billing period. Your next invoice will reflect the new lower price."
            ),
            change_type=ChangeType.downgrade,
            timing=ChangeTiming.next_period,
            new_subject_count=len(keep),
            new_price=new_price,
            subscription_id=subscription.stripe_subscription_id,
            pending_change_id=str(pending.id),
        )

    @staticmethod
    def _retarget_pending(pending: PendingSubscriptionChange, subject_ids: Sequence[str]) -> None:
        pending.new_subject_ids = list(subject_ids)
        pending.new_subject_count = len(subject_ids)
        pending.new_price = calculate_price(len(subject_ids))

    async def undo_pending_change(self, db: AsyncSession, user_id: str, change_id) -> None:
        """Cancel an open pending change and restore billing to the current grants."""
        if not change_id:
            raise InvalidArgumentError("changeId is required")
        try:
            change_uuid = uuid.UUID(str(change_id))
        except ValueError:
            raise InvalidArgumentError(f"Invalid changeId: {change_id!r}")

        change = await db.get(PendingSubscriptionChange, change_uuid)
        if change is None or change.status != PendingChangeStatus.pending:
            raise NotFoundError("Pending change not found or already processed")
        if change.user_id != user_id:
            raise ForbiddenError("Unauthorized to modify this change")

        subscription = await self._load_subscription(db, user_id, for_update=True)
        subscription_pk = subscription.id

        if change.change_type == ChangeType.downgrade:
            # Grants were never reduced for the downgrade, so they are the original plan
            granted = await get_granted_subject_ids(db, user_id)
            original_count = len(granted)
            self.billing.replace_line_items(
                subscription.stripe_subscription_id, line_items_for(original_count), ProrationBehavior.none
            )
            original_price = apply_billed_entitlement(subscription, original_count)
            logger.info(
                f"Reverted downgrade {change.id}: {change.new_subject_count} -> {original_count} subjects, "
                f"price {original_price}"
            )

        change.transition_to(PendingChangeStatus.cancelled)
        await self._commit(db, subscription_pk)
        logger.info(f"Pending change {change_uuid} cancelled by user {user_id}")

    async def restore_pending_subjects(
        self,
        db: AsyncSession,
        user_id: str,
        subject_ids: Sequence,
    ) -> RestoreResult:
        """Take subjects back out of an open pending downgrade's removal list."""
        to_restore = normalize_subject_ids(subject_ids)
        if not to_restore:
            raise InvalidArgumentError("Provide subjectId or restoreSubjectIds[]")

        subscription = await self._load_subscription(db, user_id, for_update=True)
        subscription_pk = subscription.id
        pending = await get_open_pending_downgrade(db, subscription.id)
        if pending is None:
            raise NotFoundError("No pending downgrade found to modify")

        granted = await get_granted_subject_ids(db, user_id)
        if any(s not in granted for s in to_restore):
            raise InvalidArgumentError("One or more subject IDs are invalid for this user")

        merged = ordered_union(pending.new_subject_ids or [], to_restore)
        merged = [s for s in merged if s in granted]
        new_count = len(merged)

        # Restored subjects were paid for this period already
        self.billing.replace_line_items(
            subscription.stripe_subscription_id, line_items_for(new_count), ProrationBehavior.none
        )
        new_price = apply_billed_entitlement(subscription, new_count)

        resolved = new_count == len(granted)
        if resolved:
            pending.transition_to(PendingChangeStatus.cancelled)
            logger.info(f"Pending downgrade {pending.id} fully restored and cancelled")
        else:
            self._retarget_pending(pending, merged)
            logger.info(f"Pending downgrade {pending.id} now keeps {new_count} subjects")

        await self._commit(db, subscription_pk)

        return RestoreResult(
            message=(
                "Removal cancelled for the selected subject"
                if len(to_restore) == 1
                else "Removal cancelled for the selected subjects"
            ),
            pending_change_resolved=resolved,
            new_subject_count=new_count,
            new_price=new_price,
            restored_subject_ids=to_restore,
        )
