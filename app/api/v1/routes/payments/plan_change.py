"""Plan change endpoints - preview, apply and undo subject plan changes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.routes.auth.auth import get_current_user
from app.core.errors import BillingError, ConflictError
from app.core.logging_config import get_logger
from app.core.response import success_response, ResponseModel
from app.db.deps import get_db
from app.models.user import User
from app.schemas.billing.billing_schema import (
    ModifyPendingChangeRequest,
    PlanChangeRequest,
    UndoPendingChangeRequest,
)
from app.services.payments.plan_change_service import PlanChangeService
from app.services.payments.stripe_client import StripeClient, get_billing_client
from app.utils.enums import ChangeType

logger = get_logger(__name__)
router = APIRouter(prefix="/stripe", tags=["payments", "plan-change"])


@router.post("/plan-change-preview", response_model=ResponseModel)
async def plan_change_preview(
    req: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Price a new subject selection without applying it.

    Response:
        - currentPrice, newPrice, prorationAmount
        - isUpgrade, isDowngrade, changeType, effectiveDate
        - estimated: present when Stripe could not be reached
    """
    try:
        preview = await PlanChangeService(billing).preview_plan_change(
            db, current_user.id, req.new_subject_ids
        )
        return success_response(msg="Plan change preview", data=preview.to_dict())
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Plan change preview failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to preview plan change")


@router.post("/plan-change", response_model=ResponseModel)
async def plan_change(
    req: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Apply a new subject selection.

    Upgrades are charged and granted right away; downgrades are scheduled for
    the end of the current billing period.
    """
    logger.info(
        f"Plan change requested: user={current_user.id}, subjects={len(req.new_subject_ids)}, timing={req.timing}"
    )
    try:
        result = await PlanChangeService(billing).change_plan(db, current_user.id, req.new_subject_ids)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Plan change failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to change plan")

    if result.change_type == ChangeType.no_change:
        raise ConflictError(result.message, data=result.to_dict())
    return success_response(msg=result.message, data=result.to_dict())


@router.post("/undo-pending-change", response_model=ResponseModel)
async def undo_pending_change(
    req: UndoPendingChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Cancel a scheduled downgrade and keep the current plan."""
    try:
        await PlanChangeService(billing).undo_pending_change(db, current_user.id, req.change_id)
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Undo of pending change {req.change_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to undo pending change")

    message = "Pending change cancelled successfully"
    return success_response(msg=message, data={"message": message})


@router.post("/modify-pending-change", response_model=ResponseModel)
async def modify_pending_change(
    req: ModifyPendingChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing: StripeClient = Depends(get_billing_client),
):
    """Keep one or more subjects that a scheduled downgrade would remove.

    Request:
        - subjectId: a single subject to restore, or
        - restoreSubjectIds: several subjects to restore
    """
    try:
        result = await PlanChangeService(billing).restore_pending_subjects(
            db, current_user.id, req.subject_ids()
        )
    except BillingError:
        raise
    except Exception as e:
        logger.error(f"Modifying pending change failed for user {current_user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to modify pending change")

    return success_response(msg=result.message, data=result.to_dict())
