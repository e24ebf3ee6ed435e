# app/models/__init__.py

from .user import User
from .subject import Subject
from .subject_grant import SubjectGrant
from .subscription import Subscription
from .pending_change import PendingSubscriptionChange
from .processed_stripe_event import ProcessedStripeEvent

__all__ = [
    "User",
    "Subject",
    "SubjectGrant",
    "Subscription",
    "PendingSubscriptionChange",
    "ProcessedStripeEvent",
]
