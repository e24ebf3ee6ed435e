# app/schemas/billing/billing_schema.py
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelRequest(BaseModel):
    # Frontend sends camelCase keys; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True)


class PlanChangeRequest(_CamelRequest):
    new_subject_ids: list[str] = Field(
        default_factory=list,
        alias="newSubjectIds",
        description="Every subject the user wants after the change",
        json_schema_extra={"example": ["0b8c1f0e-2f6a-4d55-9a47-1d1f7c0a2e11"]},
    )
    # Upgrades are always immediate and downgrades always wait for renewal;
    # the client's preference is only logged
    timing: Optional[str] = None


class UndoPendingChangeRequest(_CamelRequest):
    change_id: Optional[str] = Field(default=None, alias="changeId")


class ModifyPendingChangeRequest(_CamelRequest):
    subject_id: Optional[str] = Field(default=None, alias="subjectId")
    restore_subject_ids: Optional[list[str]] = Field(default=None, alias="restoreSubjectIds")

    def subject_ids(self) -> list[str]:
        ids = list(self.restore_subject_ids or [])
        if self.subject_id:
            ids.append(self.subject_id)
        return ids


class CheckoutRequest(_CamelRequest):
    subject_ids: list[str] = Field(
        default_factory=list,
        alias="subjectIds",
        description="Subjects to unlock with the new subscription",
    )
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")


class BillingPortalRequest(_CamelRequest):
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class ProcessCheckoutRequest(_CamelRequest):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
