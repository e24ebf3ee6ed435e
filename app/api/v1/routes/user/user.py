# app/routes/user.py

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.routes.auth.auth import get_current_user
from app.core.response import success_response, ResponseModel
from app.db.deps import get_db
from app.models.user import User
from app.services.subscription_access import (
    get_subject_access,
    get_subscription_status,
    list_pending_changes,
    serialize_pending_change,
)

router = APIRouter(prefix="/user", tags=["user"])


@router.get("/pending-subscription-changes", response_model=ResponseModel)
async def pending_subscription_changes(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    changes = await list_pending_changes(db, current_user.id)
    return success_response(
        msg="Pending subscription changes",
        data={"pendingChanges": [serialize_pending_change(change) for change in changes]},
    )


@router.get("/subscription-status", response_model=ResponseModel)
async def subscription_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Billing summary for the settings page, including what the next renewal
    will bill when a downgrade is scheduled.
    """
    status = await get_subscription_status(db, current_user.id)
    if status is None:
        return success_response(msg="No subscription")
    return success_response(msg="Subscription status", data=status)


@router.get("/subject-access", response_model=ResponseModel)
async def subject_access(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return success_response(msg="Subject access", data=await get_subject_access(db, current_user.id))
