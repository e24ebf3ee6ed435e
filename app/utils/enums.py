import enum


class SubscriptionStatus(str, enum.Enum):
    # Mirrors the Stripe subscription statuses we persist verbatim
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    incomplete_expired = "incomplete_expired"
    trialing = "trialing"
    unpaid = "unpaid"
    paused = "paused"


class ChangeType(str, enum.Enum):
    upgrade = "upgrade"
    downgrade = "downgrade"
    no_change = "no_change"


class ChangeTiming(str, enum.Enum):
    immediate = "immediate"
    next_period = "next_period"


class PendingChangeStatus(str, enum.Enum):
    pending = "pending"
    applied = "applied"
    cancelled = "cancelled"
    failed = "failed"


class ProrationBehavior(str, enum.Enum):
    # Values accepted by Stripe's subscription update endpoint
    always_invoice = "always_invoice"
    create_prorations = "create_prorations"
    none = "none"
