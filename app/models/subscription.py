import uuid
from sqlalchemy import (
    Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Boolean, func
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import SubscriptionStatus


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # One subscription per user; checkout webhooks upsert on this key
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    stripe_customer_id = Column(String, nullable=True, unique=True)
    stripe_subscription_id = Column(String, nullable=True, unique=True, index=True)
    stripe_price_id = Column(String, nullable=True)

    status = Column(
        Enum(SubscriptionStatus, name="subscriptionstatus"),
        nullable=False,
        default=SubscriptionStatus.active,
    )

    # Billed entitlement. While a downgrade is pending this already holds the
    # post-renewal values, so it can be lower than the live grant count.
    subject_count = Column(Integer, nullable=False, default=0)
    custom_price = Column(Numeric(10, 2), nullable=False, default=0)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Optimistic concurrency token, bumped by the ORM on every flush
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    # relationships
    user = relationship("User", back_populates="subscription")
    pending_changes = relationship(
        "PendingSubscriptionChange",
        back_populates="subscription",
        cascade="all, delete-orphan",
    )
