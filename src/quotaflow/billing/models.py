"""Plan catalog, quota and billing ledger models."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from quotaflow.billing.tier_features import PlanRecurringInterval
from quotaflow.models.base import Base, JSONType, TimestampMixin


class Tier(Base, TimestampMixin):
    """Subscription plan and the features it grants.

    ``features`` is an ordered list of feature definitions; it is copied into
    a user's quota record when that record is (re)created.
    """

    __tablename__ = "tiers"

    slug: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    price: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    plan_recurring_interval: Mapped[PlanRecurringInterval] = mapped_column(
        Enum(PlanRecurringInterval, values_callable=lambda x: [e.value for e in x]),
        default=PlanRecurringInterval.MONTHLY,
        nullable=False,
    )
    external_product_ref: Mapped[str | None] = mapped_column(
        String(128),
        unique=True,
        index=True,
        nullable=True,
    )
    features: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )


class QuotaRecord(Base, TimestampMixin):
    """Live usage counters for one user, replaced wholesale on tier change."""

    __tablename__ = "quota_records"

    user_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    tier_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    last_subscription_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    canceled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    subscription_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    features: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    # Bumped on every write; guards conditional updates
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    def snapshot(self) -> dict[str, Any]:
        """Full copy of the record, suitable for archiving."""
        return {
            "user_id": self.user_id,
            "tier_id": self.tier_id,
            "last_subscription_date": self.last_subscription_date,
            "canceled": self.canceled,
            "canceled_at": self.canceled_at,
            "subscription_period_end": self.subscription_period_end,
            "features": [dict(f) for f in self.features],
            "record_created_at": self.created_at,
            "record_updated_at": self.updated_at,
        }


class QuotaArchiveEntry(Base):
    """One superseded quota record, keyed by ``(user_id, sequence)``."""

    __tablename__ = "quota_archive"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_quota_archive_user_sequence"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    tier_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    last_subscription_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    canceled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    subscription_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    features: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    record_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    record_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class BillingEvent(Base):
    """Raw payment-provider events merged per checkout/transaction."""

    __tablename__ = "billing_history"

    checkout_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    current_status: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    created_at: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    updated_at: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    events: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
