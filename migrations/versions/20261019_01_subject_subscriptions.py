"""subject subscriptions, pending changes and webhook ledger

Revision ID: subject_subscriptions_2026
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "subject_subscriptions_2026"
down_revision = None
branch_labels = None
depends_on = None

subscription_status = sa.Enum(
    "active",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "trialing",
    "unpaid",
    "paused",
    name="subscriptionstatus",
)
change_type = sa.Enum("upgrade", "downgrade", "no_change", name="changetype")
change_timing = sa.Enum("immediate", "next_period", name="changetiming")
pending_change_status = sa.Enum("pending", "applied", "cancelled", "failed", name="pendingchangestatus")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "subjects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.String(), nullable=False, server_default=sa.text("''")),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("color", sa.String(), nullable=False, server_default=sa.text("'#000000'")),
        sa.Column("maturita", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )

    op.create_table(
        "relation_subjects_user",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint("user_id", "subject_id", name="uq_relation_subjects_user"),
    )
    op.create_index("ix_relation_subjects_user_user_id", "relation_subjects_user", ["user_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True, unique=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("stripe_price_id", sa.String(), nullable=True),
        sa.Column("status", subscription_status, nullable=False, server_default=sa.text("'active'")),
        sa.Column("subject_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("custom_price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index(
        "ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"], unique=True
    )

    op.create_table(
        "pending_subscription_changes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("change_type", change_type, nullable=False),
        sa.Column("timing", change_timing, nullable=False),
        sa.Column("new_subject_ids", sa.JSON(), nullable=False),
        sa.Column("new_subject_count", sa.Integer(), nullable=False),
        sa.Column("new_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", pending_change_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index(
        "ix_pending_subscription_changes_user_id", "pending_subscription_changes", ["user_id"], unique=False
    )
    op.create_index(
        "ix_pending_subscription_changes_subscription_id",
        "pending_subscription_changes",
        ["subscription_id"],
        unique=False,
    )

    op.create_table(
        "processed_stripe_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_processed_stripe_events_event_id", "processed_stripe_events", ["event_id"], unique=True)


def downgrade():
    op.drop_index("ix_processed_stripe_events_event_id", table_name="processed_stripe_events")
    op.drop_table("processed_stripe_events")
    op.drop_index("ix_pending_subscription_changes_subscription_id", table_name="pending_subscription_changes")
    op.drop_index("ix_pending_subscription_changes_user_id", table_name="pending_subscription_changes")
    op.drop_table("pending_subscription_changes")
    op.drop_index("ix_subscriptions_stripe_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_relation_subjects_user_user_id", table_name="relation_subjects_user")
    op.drop_table("relation_subjects_user")
    op.drop_table("subjects")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (pending_change_status, change_timing, change_type, subscription_status):
        enum_type.drop(bind, checkfirst=True)
