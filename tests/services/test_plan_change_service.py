from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from app.models.pending_change import PendingSubscriptionChange
from app.models.subscription import Subscription
from app.services.payments.plan_change_service import PlanChangeService
from app.services.subscription_access import get_granted_subject_ids
from app.utils.enums import ChangeTiming, ChangeType, PendingChangeStatus

pytestmark = pytest.mark.asyncio


async def _pending_rows(db, subscription_id):
    result = await db.execute(
        select(PendingSubscriptionChange).where(PendingSubscriptionChange.subscription_id == subscription_id)
    )
    return list(result.scalars().all())


def _replacements(fake_billing):
    return [(call["quantity"], call["proration_behavior"]) for call in fake_billing.calls_named("replace_line_items")]


async def test_upgrade_grants_exactly_the_requested_subjects(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(5)
    subscription = await seed.subscription(current_user, subjects[:2])
    fake_billing.proration_amount = Decimal("7.47")

    result = await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects))

    assert result.success is True
    assert result.change_type == ChangeType.upgrade
    assert result.new_subject_count == 5
    assert result.new_price == Decimal("14.95")
    assert result.charged_immediately is True
    assert result.immediate_charge_amount == Decimal("7.47")
    assert result.invoice_id == "in_test"

    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects))
    await db_session.refresh(subscription)
    assert subscription.subject_count == 5
    assert subscription.custom_price == Decimal("14.95")
    assert _replacements(fake_billing) == [(5, "always_invoice")]
    assert len(fake_billing.calls_named("collect_proration_invoice")) == 1


async def test_upgrade_with_swapped_subjects_drops_unrequested_grants(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(5)
    await seed.subscription(current_user, subjects[:2])

    await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects[2:]))

    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects[2:]))


async def test_downgrade_keeps_grants_and_records_pending_change(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects)

    result = await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects[:1]))

    assert result.change_type == ChangeType.downgrade
    assert result.timing == ChangeTiming.next_period
    assert result.new_subject_count == 1
    assert result.new_price == Decimal("4.99")
    assert "immediateChargeAmount" not in result.to_dict()

    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects))

    rows = await _pending_rows(db_session, subscription.id)
    assert len(rows) == 1
    pending = rows[0]
    assert pending.status == PendingChangeStatus.pending
    assert pending.change_type == ChangeType.downgrade
    assert pending.timing == ChangeTiming.next_period
    assert pending.new_subject_ids == subject_ids(subjects[:1])
    assert pending.new_subject_count == 1
    assert str(pending.id) == result.pending_change_id

    await db_session.refresh(subscription)
    assert subscription.subject_count == 1
    assert subscription.custom_price == Decimal("4.99")
    assert _replacements(fake_billing) == [(1, "none")]
    assert fake_billing.calls_named("collect_proration_invoice") == []


async def test_second_downgrade_replaces_pending_target(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects)
    service = PlanChangeService(fake_billing)

    await service.change_plan(db_session, current_user.id, subject_ids(subjects[:3]))
    await service.change_plan(db_session, current_user.id, subject_ids(subjects[1:2]))

    rows = await _pending_rows(db_session, subscription.id)
    assert len(rows) == 1
    assert rows[0].new_subject_ids == subject_ids(subjects[1:2])
    await db_session.refresh(subscription)
    assert subscription.subject_count == 1


async def test_downgrade_cannot_introduce_new_subjects(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    await seed.subscription(current_user, subjects[:3])

    with pytest.raises(InvalidArgumentError):
        await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects[3:]))

    assert fake_billing.calls_named("replace_line_items") == []


async def test_adding_back_removed_subjects_merges_into_pending_target(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects)
    service = PlanChangeService(fake_billing)
    await service.change_plan(db_session, current_user.id, subject_ids(subjects[:1]))
    fake_billing.calls.clear()

    result = await service.change_plan(db_session, current_user.id, subject_ids(subjects[:3]))

    assert result.change_type == ChangeType.upgrade
    assert result.new_subject_count == 3
    assert result.charged_immediately is False

    # Access is untouched, only the renewal target grows
    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects))
    rows = await _pending_rows(db_session, subscription.id)
    assert len(rows) == 1
    assert rows[0].status == PendingChangeStatus.pending
    assert set(rows[0].new_subject_ids) == set(subject_ids(subjects[:3]))
    assert rows[0].new_subject_count == 3

    await db_session.refresh(subscription)
    assert subscription.subject_count == 3
    assert subscription.custom_price == Decimal("9.97")
    assert _replacements(fake_billing) == [(3, "none")]
    assert fake_billing.calls_named("collect_proration_invoice") == []


async def test_adding_back_every_removed_subject_cancels_pending_change(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects)
    pending = await seed.pending_downgrade(subscription, subjects[:1])

    await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects))

    await db_session.refresh(pending)
    await db_session.refresh(subscription)
    assert pending.status == PendingChangeStatus.cancelled
    assert subscription.subject_count == 3


async def test_new_subject_during_pending_downgrade_charges_only_beyond_paid(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects[:3])
    pending = await seed.pending_downgrade(subscription, subjects[:1])
    fake_billing.proration_amount = Decimal("1.25")

    requested = [subjects[0], subjects[3]]
    result = await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(requested))

    assert result.change_type == ChangeType.upgrade
    assert result.immediate_charge_amount == Decimal("1.25")
    assert result.new_subject_count == 2

    # New subject is usable now, nothing paid for is taken away early
    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects))
    await db_session.refresh(pending)
    assert pending.status == PendingChangeStatus.pending
    assert set(pending.new_subject_ids) == set(subject_ids(requested))

    await db_session.refresh(subscription)
    assert subscription.subject_count == 2
    assert _replacements(fake_billing) == [(3, "none"), (4, "always_invoice"), (2, "none")]


async def test_new_subject_during_pending_downgrade_only_adds_itself_to_renewal(
    db_session, seed, current_user, fake_billing, subject_ids
):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects[:3])
    pending = await seed.pending_downgrade(subscription, subjects[:1])

    # subjects[1] is already granted and was dropped by the downgrade
    result = await PlanChangeService(fake_billing).change_plan(
        db_session, current_user.id, subject_ids([subjects[1], subjects[3]])
    )

    assert result.new_subject_count == 2
    assert result.new_price == Decimal("7.48")
    await db_session.refresh(pending)
    assert pending.new_subject_ids == subject_ids([subjects[0], subjects[3]])
    assert pending.new_subject_count == 2
    await db_session.refresh(subscription)
    assert subscription.subject_count == 2
    assert _replacements(fake_billing) == [(3, "none"), (4, "always_invoice"), (2, "none")]


async def test_same_selection_is_a_no_op(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(2)
    await seed.subscription(current_user, subjects)

    result = await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects))

    assert result.success is False
    assert result.change_type == ChangeType.no_change
    assert fake_billing.calls == []


async def test_invalid_requests_are_rejected(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(2)
    await seed.subscription(current_user, subjects)
    service = PlanChangeService(fake_billing)

    with pytest.raises(InvalidArgumentError):
        await service.change_plan(db_session, current_user.id, [])
    with pytest.raises(InvalidArgumentError):
        await service.change_plan(db_session, current_user.id, ["not-a-uuid"])
    with pytest.raises(InvalidArgumentError):
        await service.change_plan(db_session, current_user.id, [str(uuid.uuid4())])


async def test_change_without_subscription_is_not_found(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(1)

    with pytest.raises(NotFoundError):
        await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects))


async def test_provider_failure_leaves_local_state_untouched(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects[:1])
    fake_billing.fail_on.add("replace_line_items")

    with pytest.raises(ExternalServiceError):
        await PlanChangeService(fake_billing).change_plan(db_session, current_user.id, subject_ids(subjects))

    assert await get_granted_subject_ids(db_session, current_user.id) == subject_ids(subjects[:1])
    assert subscription.subject_count == 1


async def test_concurrent_write_is_reported_as_conflict(engine, db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(2)
    subscription = await seed.subscription(current_user, subjects)
    subscription_pk = subscription.id

    other_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with other_session() as other:
        competing = await other.get(Subscription, subscription_pk)
        competing.subject_count = 1
        await other.commit()

    subscription.subject_count = 3
    subscription.custom_price = Decimal("9.97")
    with pytest.raises(ConflictError):
        await PlanChangeService(fake_billing)._commit(db_session, subscription_pk)


async def test_preview_upgrade_prorates_remaining_period(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    await seed.subscription(
        current_user,
        subjects[:2],
        period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        period_end=datetime(2026, 3, 31, tzinfo=timezone.utc),
    )
    now = datetime(2026, 3, 16, tzinfo=timezone.utc)

    preview = await PlanChangeService(fake_billing).preview_plan_change(
        db_session, current_user.id, subject_ids(subjects), now=now
    )

    assert preview.is_upgrade is True
    assert preview.current_price == Decimal("7.48")
    assert preview.new_price == Decimal("12.46")
    assert preview.proration_amount == Decimal("2.49")
    assert preview.effective_date == now
    assert preview.estimated is False


async def test_preview_downgrade_has_no_credit_and_waits_for_renewal(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    period_end = datetime(2026, 3, 31, tzinfo=timezone.utc)
    await seed.subscription(
        current_user,
        subjects,
        period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        period_end=period_end,
    )

    preview = await PlanChangeService(fake_billing).preview_plan_change(
        db_session, current_user.id, subject_ids(subjects[:1]), now=datetime(2026, 3, 10, tzinfo=timezone.utc)
    )

    assert preview.is_downgrade is True
    assert preview.proration_amount == Decimal("0.00")
    assert preview.new_price == Decimal("4.99")
    assert preview.effective_date == period_end


async def test_preview_restoring_paid_subjects_costs_nothing_now(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects)
    await seed.pending_downgrade(subscription, subjects[:1])

    preview = await PlanChangeService(fake_billing).preview_plan_change(
        db_session, current_user.id, subject_ids(subjects[:2])
    )

    assert preview.is_upgrade is True
    assert preview.proration_amount == Decimal("0.00")
    assert preview.new_subject_count == 2


async def test_preview_never_changes_state(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects[:2])
    service = PlanChangeService(fake_billing)

    async def snapshot():
        row = (
            await db_session.execute(
                select(Subscription.subject_count, Subscription.custom_price, Subscription.version).where(
                    Subscription.id == subscription.id
                )
            )
        ).one()
        grants = sorted(await get_granted_subject_ids(db_session, current_user.id))
        pending = len(await _pending_rows(db_session, subscription.id))
        return tuple(row), grants, pending

    before = await snapshot()
    for selection in (subjects, subjects[:1], subjects[:2]):
        await service.preview_plan_change(db_session, current_user.id, subject_ids(selection))
    await db_session.commit()

    assert await snapshot() == before
    assert fake_billing.calls_named("replace_line_items") == []
    assert fake_billing.calls_named("collect_proration_invoice") == []


async def test_preview_falls_back_to_estimate_when_stripe_is_down(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(2)
    await seed.subscription(current_user, subjects[:1])
    fake_billing.fail_on.add("retrieve_subscription")

    preview = await PlanChangeService(fake_billing).preview_plan_change(
        db_session, current_user.id, subject_ids(subjects)
    )

    assert preview.estimated is True
    assert preview.to_dict()["estimated"] is True
    assert preview.new_price == Decimal("7.48")


async def test_undo_restores_billing_to_current_grants(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects)
    service = PlanChangeService(fake_billing)
    result = await service.change_plan(db_session, current_user.id, subject_ids(subjects[:1]))
    fake_billing.calls.clear()

    await service.undo_pending_change(db_session, current_user.id, result.pending_change_id)

    await db_session.refresh(subscription)
    assert subscription.subject_count == 3
    assert subscription.custom_price == Decimal("9.97")
    rows = await _pending_rows(db_session, subscription.id)
    assert rows[0].status == PendingChangeStatus.cancelled
    assert _replacements(fake_billing) == [(3, "none")]
    assert set(await get_granted_subject_ids(db_session, current_user.id)) == set(subject_ids(subjects))


async def test_undo_rejects_missing_resolved_and_foreign_changes(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(2)
    other_user = await seed.user("user_2")
    other_subscription = await seed.subscription(other_user, subjects, stripe_subscription_id="sub_other")
    foreign = await seed.pending_downgrade(other_subscription, subjects[:1])
    service = PlanChangeService(fake_billing)

    with pytest.raises(InvalidArgumentError):
        await service.undo_pending_change(db_session, current_user.id, None)
    with pytest.raises(InvalidArgumentError):
        await service.undo_pending_change(db_session, current_user.id, "nope")
    with pytest.raises(NotFoundError):
        await service.undo_pending_change(db_session, current_user.id, str(uuid.uuid4()))
    with pytest.raises(ForbiddenError):
        await service.undo_pending_change(db_session, current_user.id, str(foreign.id))

    foreign.status = PendingChangeStatus.applied
    await db_session.commit()
    with pytest.raises(NotFoundError):
        await service.undo_pending_change(db_session, other_user.id, str(foreign.id))


async def test_restore_subject_into_pending_downgrade(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(4)
    subscription = await seed.subscription(current_user, subjects)
    pending = await seed.pending_downgrade(subscription, subjects[:1])

    result = await PlanChangeService(fake_billing).restore_pending_subjects(
        db_session, current_user.id, [str(subjects[1].id)]
    )

    assert result.pending_change_resolved is False
    assert result.new_subject_count == 2
    assert result.new_price == Decimal("7.48")
    await db_session.refresh(pending)
    assert pending.status == PendingChangeStatus.pending
    assert pending.new_subject_ids == subject_ids(subjects[:2])
    await db_session.refresh(subscription)
    assert subscription.subject_count == 2
    assert _replacements(fake_billing) == [(2, "none")]


async def test_restoring_every_subject_resolves_pending_downgrade(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects)
    pending = await seed.pending_downgrade(subscription, subjects[:1])

    result = await PlanChangeService(fake_billing).restore_pending_subjects(
        db_session, current_user.id, subject_ids(subjects[1:])
    )

    assert result.pending_change_resolved is True
    await db_session.refresh(pending)
    assert pending.status == PendingChangeStatus.cancelled
    await db_session.refresh(subscription)
    assert subscription.subject_count == 3


async def test_restore_requires_pending_downgrade_and_granted_subjects(db_session, seed, current_user, fake_billing, subject_ids):
    subjects = await seed.subjects(3)
    subscription = await seed.subscription(current_user, subjects[:2])
    service = PlanChangeService(fake_billing)

    with pytest.raises(NotFoundError):
        await service.restore_pending_subjects(db_session, current_user.id, [str(subjects[1].id)])

    await seed.pending_downgrade(subscription, subjects[:1])
    with pytest.raises(InvalidArgumentError):
        await service.restore_pending_subjects(db_session, current_user.id, [str(subjects[2].id)])
    with pytest.raises(InvalidArgumentError):
        await service.restore_pending_subjects(db_session, current_user.id, [])
