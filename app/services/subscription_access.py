"""Reads and writes over the subscription, subject grant and pending change tables.

Renewals and status changes arrive through Stripe webhooks; this module only
loads and persists local state, it never talks to the billing provider.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidArgumentError
from app.core.logging_config import get_logger
from app.models.pending_change import PendingSubscriptionChange
from app.models.subject import Subject
from app.models.subject_grant import SubjectGrant
from app.models.subscription import Subscription
from app.services.pricing.calculator import calculate_price
from app.utils.datetime_utils import ensure_utc
from app.utils.enums import ChangeType, PendingChangeStatus, SubscriptionStatus

logger = get_logger(__name__)


def normalize_subject_ids(subject_ids: Iterable) -> list[str]:
    """Canonical string form of each id, duplicates dropped, order kept.

    Raises InvalidArgumentError for anything that is not a UUID.
    """
    seen: dict[str, None] = {}
    for raw in subject_ids or []:
        try:
            seen[str(uuid.UUID(str(raw)))] = None
        except (TypeError, ValueError, AttributeError):
            raise InvalidArgumentError(f"Invalid subject id: {raw!r}")
    return list(seen)


def ordered_union(*groups: Iterable[str]) -> list[str]:
    merged: dict[str, None] = {}
    for group in groups:
        for item in group:
            merged[item] = None
    return list(merged)


async def get_user_subscription(
    db: AsyncSession, user_id: str, for_update: bool = False
) -> Subscription | None:
    """The user's subscription row, optionally locked for the rest of the transaction."""
    stmt = select(Subscription).where(Subscription.user_id == user_id).limit(1)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalars().first()


async def get_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalars().first()


async def get_granted_subject_ids(db: AsyncSession, user_id: str) -> list[str]:
    """Subjects the user can open right now, oldest grant first."""
    result = await db.execute(
        select(SubjectGrant.subject_id)
        .where(SubjectGrant.user_id == user_id)
        .order_by(SubjectGrant.created_at, SubjectGrant.id)
    )
    return [str(subject_id) for subject_id in result.scalars().all()]


async def ensure_subjects_exist(db: AsyncSession, subject_ids: Sequence[str]) -> None:
    if not subject_ids:
        return
    result = await db.execute(
        select(Subject.id).where(Subject.id.in_([uuid.UUID(s) for s in subject_ids]))
    )
    found = {str(subject_id) for subject_id in result.scalars().all()}
    missing = [s for s in subject_ids if s not in found]
    if missing:
        raise InvalidArgumentError(f"Unknown subject ids: {', '.join(missing)}")


async def add_subject_grants(db: AsyncSession, user_id: str, subject_ids: Iterable[str]) -> int:
    """Grant each subject unless the user already has it. Returns how many were added."""
    existing = set(await get_granted_subject_ids(db, user_id))
    added = 0
    for subject_id in subject_ids:
        if subject_id in existing:
            continue
        db.add(SubjectGrant(user_id=user_id, subject_id=uuid.UUID(subject_id)))
        existing.add(subject_id)
        added += 1
    if added:
        await db.flush()
    return added


async def remove_subject_grants(db: AsyncSession, user_id: str) -> None:
    await db.execute(delete(SubjectGrant).where(SubjectGrant.user_id == user_id))


async def replace_subject_grants(db: AsyncSession, user_id: str, subject_ids: Iterable[str]) -> None:
    """Make the user's grants exactly ``subject_ids``."""
    await remove_subject_grants(db, user_id)
    for subject_id in ordered_union(subject_ids):
        db.add(SubjectGrant(user_id=user_id, subject_id=uuid.UUID(subject_id)))
    await db.flush()
    logger.info(f"Subject grants replaced for user {user_id}")


async def get_open_pending_changes(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    change_type: Optional[ChangeType] = None,
) -> list[PendingSubscriptionChange]:
    stmt = select(PendingSubscriptionChange).where(
        PendingSubscriptionChange.subscription_id == subscription_id,
        PendingSubscriptionChange.status == PendingChangeStatus.pending,
    )
    if change_type is not None:
        stmt = stmt.where(PendingSubscriptionChange.change_type == change_type)
    result = await db.execute(stmt.order_by(PendingSubscriptionChange.created_at))
    return list(result.scalars().all())


async def get_open_pending_downgrade(
    db: AsyncSession, subscription_id: uuid.UUID
) -> PendingSubscriptionChange | None:
    """At most one is expected; the oldest wins if several slipped through."""
    changes = await get_open_pending_changes(db, subscription_id, ChangeType.downgrade)
    if len(changes) > 1:
        logger.warning(
            f"Subscription {subscription_id} has {len(changes)} open pending downgrades, using {changes[0].id}"
        )
    return changes[0] if changes else None


async def list_pending_changes(db: AsyncSession, user_id: str) -> list[PendingSubscriptionChange]:
    """Open pending changes on the user's subscription, oldest first."""
    subscription = await get_user_subscription(db, user_id)
    if subscription is None:
        return []
    return await get_open_pending_changes(db, subscription.id)


def apply_billed_entitlement(subscription: Subscription, subject_count: int) -> Decimal:
    """Write the billed count and its price onto the subscription row."""
    price = calculate_price(subject_count)
    subscription.subject_count = subject_count
    subscription.custom_price = price
    return price


@dataclass(frozen=True)
class ProjectedState:
    """Access today versus what the next renewal will bill."""
    access_count: int
    billed_count: int
    billed_price: Decimal
    renewal_count: int
    renewal_price: Decimal
    renewal_date: Optional[datetime]
    has_pending_downgrade: bool

    def to_dict(self) -> dict:
        return {
            "accessCount": self.access_count,
            "billedCount": self.billed_count,
            "billedPrice": float(self.billed_price),
            "renewalCount": self.renewal_count,
            "renewalPrice": float(self.renewal_price),
            "renewalDate": self.renewal_date.isoformat() if self.renewal_date else None,
            "hasPendingDowngrade": self.has_pending_downgrade,
        }


def project_state(
    subscription: Subscription,
    pending_change: Optional[PendingSubscriptionChange],
    granted_subject_ids: Sequence[str],
) -> ProjectedState:
    """Merge the live row with an open pending change. Pure, never touches the session."""
    billed_count = subscription.subject_count or 0
    billed_price = Decimal(subscription.custom_price if subscription.custom_price is not None else calculate_price(billed_count))

    pending_open = (
        pending_change is not None
        and pending_change.status == PendingChangeStatus.pending
        and pending_change.change_type == ChangeType.downgrade
    )
    if pending_open:
        renewal_count = pending_change.new_subject_count
        renewal_price = calculate_price(renewal_count)
        renewal_date = ensure_utc(pending_change.scheduled_date) or ensure_utc(subscription.current_period_end)
    else:
        renewal_count = billed_count
        renewal_price = billed_price
        renewal_date = ensure_utc(subscription.current_period_end)

    return ProjectedState(
        access_count=len(granted_subject_ids),
        billed_count=billed_count,
        billed_price=billed_price,
        renewal_count=renewal_count,
        renewal_price=renewal_price,
        renewal_date=renewal_date if not subscription.cancel_at_period_end else None,
        has_pending_downgrade=pending_open,
    )


async def get_subscription_status(db: AsyncSession, user_id: str) -> dict | None:
    """Status summary shown on the settings page, or None without a subscription."""
    subscription = await get_user_subscription(db, user_id)
    if subscription is None:
        return None

    granted = await get_granted_subject_ids(db, user_id)
    pending = await get_open_pending_downgrade(db, subscription.id)
    projected = project_state(subscription, pending, granted)
    period_end = ensure_utc(subscription.current_period_end)

    return {
        "isActive": subscription.status == SubscriptionStatus.active,
        "isPastDue": subscription.status == SubscriptionStatus.past_due,
        "isCanceled": subscription.status == SubscriptionStatus.canceled,
        "willCancelAtPeriodEnd": bool(subscription.cancel_at_period_end),
        "currentPeriodEnd": period_end.isoformat() if period_end else None,
        "subjectCount": subscription.subject_count,
        "price": float(projected.billed_price),
        "projected": projected.to_dict(),
    }


async def get_subject_access(db: AsyncSession, user_id: str) -> dict:
    subscription = await get_user_subscription(db, user_id)
    if subscription is None or subscription.status != SubscriptionStatus.active:
        return {
            "hasAccess": False,
            "subjectsCount": 0,
            "maxSubjects": 0,
            "availableSlots": 0,
            "selectedSubjects": [],
        }

    selected = await get_granted_subject_ids(db, user_id)
    # During a pending downgrade the user keeps every granted subject
    max_subjects = max(subscription.subject_count or 0, len(selected))
    return {
        "hasAccess": True,
        "subjectsCount": len(selected),
        "maxSubjects": max_subjects,
        "availableSlots": max(0, max_subjects - len(selected)),
        "selectedSubjects": selected,
    }


def serialize_pending_change(change: PendingSubscriptionChange) -> dict:
    scheduled = ensure_utc(change.scheduled_date)
    created = ensure_utc(change.created_at)
    return {
        "id": str(change.id),
        "subscriptionId": str(change.subscription_id),
        "changeType": ChangeType(change.change_type).value,
        "timing": change.timing.value if hasattr(change.timing, "value") else str(change.timing),
        "newSubjectIds": list(change.new_subject_ids or []),
        "newSubjectCount": change.new_subject_count,
        "newPrice": float(change.new_price),
        "scheduledDate": scheduled.isoformat() if scheduled else None,
        "status": PendingChangeStatus(change.status).value,
        "createdAt": created.isoformat() if created else None,
    }
