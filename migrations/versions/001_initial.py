"""Initial migration - create tiers, users, quota and billing ledger tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # Plan catalog
    op.create_table(
        "tiers",
        sa.Column("slug", sa.String(64), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "plan_recurring_interval",
            sa.Enum("monthly", "yearly", name="planrecurringinterval"),
            nullable=False,
        ),
        sa.Column("external_product_ref", sa.String(128), nullable=True),
        sa.Column("features", JSON_TYPE, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("slug", name="pk_tiers"),
    )
    op.create_index(
        "ix_tiers_external_product_ref",
        "tiers",
        ["external_product_ref"],
        unique=True,
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("tier_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("external_customer_id", sa.String(128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_tier_id", "users", ["tier_id"])
    op.create_index("ix_users_external_customer_id", "users", ["external_customer_id"])

    # Live quota counters, one row per user
    op.create_table(
        "quota_records",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("tier_id", sa.String(64), nullable=False),
        sa.Column("last_subscription_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("features", JSON_TYPE, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("user_id", name="pk_quota_records"),
    )
    op.create_index("ix_quota_records_tier_id", "quota_records", ["tier_id"])
    op.create_index("ix_quota_records_canceled", "quota_records", ["canceled"])
    op.create_index(
        "ix_quota_records_subscription_period_end",
        "quota_records",
        ["subscription_period_end"],
    )

    # One row per superseded quota record
    op.create_table(
        "quota_archive",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("tier_id", sa.String(64), nullable=False),
        sa.Column("last_subscription_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("features", JSON_TYPE, nullable=False),
        sa.Column("record_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("record_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_quota_archive"),
        sa.UniqueConstraint("user_id", "sequence", name="uq_quota_archive_user_sequence"),
    )
    op.create_index("ix_quota_archive_user_id", "quota_archive", ["user_id"])

    # Raw payment-provider events merged per checkout
    op.create_table(
        "billing_history",
        sa.Column("checkout_id", sa.String(128), nullable=False),
        sa.Column("current_status", sa.String(64), nullable=True),
        sa.Column("created_at", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.String(64), nullable=False),
        sa.Column("events", JSON_TYPE, nullable=False),
        sa.PrimaryKeyConstraint("checkout_id", name="pk_billing_history"),
    )


def downgrade() -> None:
    op.drop_table("billing_history")
    op.drop_table("quota_archive")
    op.drop_table("quota_records")
    op.drop_table("users")
    op.drop_table("tiers")
    op.execute("DROP TYPE IF EXISTS planrecurringinterval")
