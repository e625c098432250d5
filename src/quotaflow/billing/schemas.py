"""Pydantic schemas for the plan catalog, quotas and billing API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator

from quotaflow.billing.intervals import ensure_utc
from quotaflow.billing.tier_features import (
    UNLIMITED_QUOTA,
    FeatureSlug,
    PlanRecurringInterval,
    RecurringInterval,
)


class Feature(BaseModel):
    """Metered capability granted by a tier.

    The quota invariant is checked when tiers are seeded, not here: stored
    features are trusted when quota is evaluated.
    """

    slug: FeatureSlug
    name: str
    description: str = ""
    limited: bool = False
    max_quota: int = UNLIMITED_QUOTA
    recurring_interval: RecurringInterval = RecurringInterval.NONE

    @property
    def is_unlimited(self) -> bool:
        return self.max_quota == UNLIMITED_QUOTA


class FeatureUsage(Feature):
    """Feature definition plus the user's counter for it."""

    usage_count: int = Field(0, ge=0)
    last_used: datetime | None = None

    @field_validator("last_used", mode="before")
    @classmethod
    def normalize_last_used(cls, v: Any) -> datetime | None:
        """Accept ISO strings and naive datetimes as UTC."""
        return ensure_utc(v)

    @field_serializer("last_used")
    def serialize_last_used(self, v: datetime | None) -> str | None:
        return v.isoformat() if v else None

    @classmethod
    def from_feature(cls, feature: dict[str, Any]) -> "FeatureUsage":
        """Seed a zeroed counter from a tier feature definition."""
        return cls.model_validate({**feature, "usage_count": 0, "last_used": None})

    def to_storage(self) -> dict[str, Any]:
        """JSON-safe dict for the quota record's features column."""
        return self.model_dump(mode="json")


class TierBase(BaseModel):
    """Base schema for a tier."""

    slug: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)
    price: int = Field(0, ge=0, description="Price in minor currency units")
    plan_recurring_interval: PlanRecurringInterval = PlanRecurringInterval.MONTHLY
    external_product_ref: str | None = Field(None, max_length=128)


class TierCreate(TierBase):
    """Schema for seeding a tier. Features stay raw so they can be validated."""

    features: list[dict[str, Any]] = Field(default_factory=list)


class TierResponse(TierBase):
    """Schema for tier response."""

    features: list[Feature]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class QuotaCheckResult(BaseModel):
    """Answer to "may this user use this feature now"."""

    allowed: bool
    count: int
    limit: int


class FeatureUsageSummary(BaseModel):
    """Per-feature usage as seen at a given instant."""

    slug: FeatureSlug
    name: str
    limited: bool
    usage_count: int
    quota_limit: int
    remaining: int
    is_unlimited: bool
    last_used: datetime | None = None
    reset_at: datetime | None = None


class QuotaRecordResponse(BaseModel):
    """Schema for a user's live quota record."""

    user_id: str
    tier_id: str
    last_subscription_date: datetime
    canceled: bool
    canceled_at: datetime | None
    subscription_period_end: datetime | None
    features: list[FeatureUsage]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserUsageResponse(BaseModel):
    """Usage summary for every feature on the user's record."""

    user_id: str
    tier_id: str
    canceled: bool
    subscription_period_end: datetime | None
    usage: list[FeatureUsageSummary]


class QuotaArchiveEntryResponse(BaseModel):
    """Schema for an archived quota record."""

    user_id: str
    sequence: int
    archived_at: datetime
    reason: str | None
    tier_id: str
    last_subscription_date: datetime | None
    canceled: bool
    subscription_period_end: datetime | None
    features: list[dict[str, Any]]

    model_config = {"from_attributes": True}


class BillingEventResponse(BaseModel):
    """Schema for a billing ledger entry."""

    checkout_id: str
    current_status: str | None
    created_at: str
    updated_at: str
    events: dict[str, Any]

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    """Acknowledgement returned for every parseable webhook delivery."""

    success: bool = True
    event_type: str | None = None
    outcome: str
    message: str | None = None


class SweepResult(BaseModel):
    """Result of a periodic or bulk lifecycle job."""

    archived_count: int
    batches: int


class BulkUpdateResult(BaseModel):
    """Result of a batched user tier update."""

    updated_count: int
    batches: int
