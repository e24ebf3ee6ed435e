"""Deferred plan changes recorded now and applied at renewal."""

import uuid
from sqlalchemy import (
    Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, JSON, func
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.errors import ConflictError
from app.db.deps import Base
from app.utils.enums import ChangeType, ChangeTiming, PendingChangeStatus


# Every status a pending change may move to from each status.
# Anything not listed here is a terminal state.
ALLOWED_TRANSITIONS: dict[PendingChangeStatus, frozenset[PendingChangeStatus]] = {
    PendingChangeStatus.pending: frozenset({
        PendingChangeStatus.applied,
        PendingChangeStatus.cancelled,
        PendingChangeStatus.failed,
    }),
    PendingChangeStatus.applied: frozenset(),
    PendingChangeStatus.cancelled: frozenset(),
    PendingChangeStatus.failed: frozenset(),
}


class PendingSubscriptionChange(Base):
    __tablename__ = "pending_subscription_changes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    change_type = Column(Enum(ChangeType, name="changetype"), nullable=False)
    timing = Column(Enum(ChangeTiming, name="changetiming"), nullable=False)

    # Subject ids (as strings) the user keeps once the change applies
    new_subject_ids = Column(JSON, nullable=False, default=list)
    new_subject_count = Column(Integer, nullable=False)
    new_price = Column(Numeric(10, 2), nullable=False)
    scheduled_date = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        Enum(PendingChangeStatus, name="pendingchangestatus"),
        nullable=False,
        default=PendingChangeStatus.pending,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    subscription = relationship("Subscription", back_populates="pending_changes")

    @property
    def is_open(self) -> bool:
        return self.status == PendingChangeStatus.pending

    def can_transition_to(self, new_status: PendingChangeStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[PendingChangeStatus(self.status)]

    def transition_to(self, new_status: PendingChangeStatus) -> None:
        """Move to ``new_status`` or raise ConflictError if that is not a legal step."""
        if not self.can_transition_to(new_status):
            raise ConflictError(
                f"Pending change {self.id} cannot move from "
                f"{PendingChangeStatus(self.status).value} to {new_status.value}"
            )
        self.status = new_status
