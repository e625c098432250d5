"""Quota ledger: per-user feature usage counters.

Consistency model
-----------------
``check_quota`` and ``increment_quota`` are separate read-modify-write calls.
Two requests for the same user and feature can both pass ``check_quota``
before either increments, so usage can overrun ``max_quota`` by up to
``concurrency - 1``. Callers that need a hard limit use ``consume_quota``.

Every write to a quota record is a conditional update guarded by the record's
``version`` column and retried on conflict, so concurrent increments are never
lost and ``consume_quota`` never admits more than ``max_quota`` uses.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.intervals import effective_usage_count, next_reset_at
from quotaflow.billing.models import QuotaRecord
from quotaflow.billing.schemas import (
    FeatureUsage,
    FeatureUsageSummary,
    QuotaCheckResult,
    UserUsageResponse,
)
from quotaflow.billing.tier_features import UNLIMITED_QUOTA, FeatureSlug
from quotaflow.core.exceptions import (
    ConcurrencyConflictError,
    FeatureNotFoundError,
    QuotaRecordNotFoundError,
    UserNotFoundError,
)
from quotaflow.core.logging import LoggerMixin
from quotaflow.core.metrics import (
    quota_write_conflicts_total,
    track_quota_check,
    track_quota_increment,
)
from quotaflow.models.user import User

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def evaluate_usage(usage: FeatureUsage, now: datetime) -> QuotaCheckResult:
    """Decide whether one more use of a feature is allowed at ``now``.

    Args:
        usage: The user's counter for the feature
        now: Current instant

    Returns:
        Allowed flag, effective count and limit (-1 for unlimited)
    """
    count = effective_usage_count(
        usage.usage_count,
        usage.last_used,
        usage.recurring_interval,
        now,
    )
    if usage.max_quota == UNLIMITED_QUOTA:
        return QuotaCheckResult(allowed=True, count=count, limit=UNLIMITED_QUOTA)
    return QuotaCheckResult(
        allowed=count < usage.max_quota,
        count=count,
        limit=usage.max_quota,
    )


class QuotaLedger(LoggerMixin):
    """Reads and writes ``quota_records``."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        default_tier_id: str,
        catalog: PlanCatalog | None = None,
        clock: Clock = utc_now,
        max_retries: int = 5,
    ) -> None:
        """Initialize quota ledger.

        Args:
            db: Database session
            default_tier_id: Tier used for users that have none
            catalog: Plan catalog (defaults to one on the same session)
            clock: Source of the current instant
            max_retries: Attempts for a version-guarded write
        """
        self.db = db
        self.default_tier_id = default_tier_id
        self.catalog = catalog or PlanCatalog(db)
        self.clock = clock
        self.max_retries = max_retries

    async def get_quota_record(self, user_id: str) -> QuotaRecord | None:
        """Load the user's record, bypassing any stale identity-map copy."""
        result = await self.db.execute(
            select(QuotaRecord)
            .where(QuotaRecord.user_id == user_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def require_quota_record(self, user_id: str) -> QuotaRecord:
        """Load the user's record.

        Raises:
            QuotaRecordNotFoundError: If the user has no record
        """
        record = await self.get_quota_record(user_id)
        if record is None:
            raise QuotaRecordNotFoundError(
                f"No quota record for user {user_id}",
                resource_type="quota_record",
                resource_id=user_id,
            )
        return record

    async def create_quota_record_from_tier(
        self,
        user_id: str,
        tier_id: str,
    ) -> QuotaRecord:
        """Replace the user's record with zeroed counters for a tier.

        Cancellation state is cleared and the subscription date restarts. Any
        previous record is overwritten, not merged; archive it first.

        Args:
            user_id: User ID
            tier_id: Tier slug

        Returns:
            The fresh quota record

        Raises:
            TierNotFoundError: If the tier does not exist
        """
        tier = await self.catalog.get_tier(tier_id)
        now = self.clock()
        features = [FeatureUsage.from_feature(f).to_storage() for f in tier.features]

        record = await self.get_quota_record(user_id)
        if record is None:
            record = QuotaRecord(
                user_id=user_id,
                tier_id=tier.slug,
                last_subscription_date=now,
                canceled=False,
                features=features,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self.db.add(record)
        else:
            record.tier_id = tier.slug
            record.last_subscription_date = now
            record.canceled = False
            record.canceled_at = None
            record.subscription_period_end = None
            record.features = features
            record.version = record.version + 1
            record.created_at = now
            record.updated_at = now

        await self.db.flush()

        self.logger.info(
            "quota_record_created",
            user_id=user_id,
            tier_id=tier.slug,
            features=len(features),
        )
        return record

    async def ensure_quota_record(self, user_id: str) -> QuotaRecord:
        """Load the user's record, creating it from their current tier if absent.

        Raises:
            UserNotFoundError: If there is no record and no such user
        """
        record = await self.get_quota_record(user_id)
        if record is not None:
            return record

        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(
                f"User not found: {user_id}",
                resource_type="user",
                resource_id=user_id,
            )
        tier_id = user.tier_id or self.default_tier_id
        self.logger.info("quota_record_lazy_init", user_id=user_id, tier_id=tier_id)
        return await self.create_quota_record_from_tier(user_id, tier_id)

    async def check_quota(
        self,
        user_id: str,
        feature: FeatureSlug | str,
    ) -> QuotaCheckResult:
        """Check whether the user may use a feature once more.

        Args:
            user_id: User ID
            feature: Feature slug

        Returns:
            Allowed flag, effective usage count and limit

        Raises:
            UserNotFoundError: If the user does not exist
            FeatureNotFoundError: If the user's tier lacks the feature
        """
        record = await self.ensure_quota_record(user_id)
        _, usage = self._find_feature(record, feature)
        result = evaluate_usage(usage, self.clock())

        track_quota_check(usage.slug.value, result.allowed)
        self.logger.debug(
            "quota_checked",
            user_id=user_id,
            feature=usage.slug.value,
            allowed=result.allowed,
            count=result.count,
            limit=result.limit,
        )
        return result

    async def increment_quota(
        self,
        user_id: str,
        feature: FeatureSlug | str,
    ) -> None:
        """Record one use of a feature.

        The counter is reset first if a new interval has started. No limit is
        enforced here.

        Raises:
            QuotaRecordNotFoundError: If the user has no record
            FeatureNotFoundError: If the record lacks the feature
            ConcurrencyConflictError: If every retry lost a write race
        """
        for _ in range(self.max_retries):
            record = await self.require_quota_record(user_id)
            index, usage = self._find_feature(record, feature)
            now = self.clock()
            count = effective_usage_count(
                usage.usage_count,
                usage.last_used,
                usage.recurring_interval,
                now,
            )

            if await self._write_usage(record, index, usage, count + 1, now):
                track_quota_increment(usage.slug.value)
                self.logger.info(
                    "quota_incremented",
                    user_id=user_id,
                    feature=usage.slug.value,
                    usage_count=count + 1,
                )
                return

        raise ConcurrencyConflictError(
            f"Could not increment {feature} for user {user_id}",
            details={"user_id": user_id, "retries": self.max_retries},
        )

    async def consume_quota(
        self,
        user_id: str,
        feature: FeatureSlug | str,
    ) -> QuotaCheckResult:
        """Check and record one use as a single guarded write.

        The increment is only applied if the record is unchanged since it was
        evaluated, so the limit holds under concurrency.

        Returns:
            The check result; ``count`` includes this use when allowed
        """
        for _ in range(self.max_retries):
            record = await self.ensure_quota_record(user_id)
            index, usage = self._find_feature(record, feature)
            now = self.clock()
            result = evaluate_usage(usage, now)
            track_quota_check(usage.slug.value, result.allowed)

            if not result.allowed:
                self.logger.info(
                    "quota_denied",
                    user_id=user_id,
                    feature=usage.slug.value,
                    count=result.count,
                    limit=result.limit,
                )
                return result

            if await self._write_usage(record, index, usage, result.count + 1, now):
                track_quota_increment(usage.slug.value)
                self.logger.info(
                    "quota_consumed",
                    user_id=user_id,
                    feature=usage.slug.value,
                    usage_count=result.count + 1,
                )
                return QuotaCheckResult(
                    allowed=True,
                    count=result.count + 1,
                    limit=result.limit,
                )

        raise ConcurrencyConflictError(
            f"Could not consume {feature} for user {user_id}",
            details={"user_id": user_id, "retries": self.max_retries},
        )

    async def get_usage_summary(self, user_id: str) -> UserUsageResponse:
        """Summarize every feature on the user's record at the current instant."""
        record = await self.ensure_quota_record(user_id)
        now = self.clock()

        usage: list[FeatureUsageSummary] = []
        for raw in record.features:
            feature = FeatureUsage.model_validate(raw)
            result = evaluate_usage(feature, now)
            unlimited = result.limit == UNLIMITED_QUOTA
            usage.append(
                FeatureUsageSummary(
                    slug=feature.slug,
                    name=feature.name,
                    limited=feature.limited,
                    usage_count=result.count,
                    quota_limit=result.limit,
                    remaining=-1 if unlimited else max(0, result.limit - result.count),
                    is_unlimited=unlimited,
                    last_used=feature.last_used,
                    reset_at=next_reset_at(feature.recurring_interval, now),
                )
            )

        return UserUsageResponse(
            user_id=record.user_id,
            tier_id=record.tier_id,
            canceled=record.canceled,
            subscription_period_end=record.subscription_period_end,
            usage=usage,
        )

    def _find_feature(
        self,
        record: QuotaRecord,
        feature: FeatureSlug | str,
    ) -> tuple[int, FeatureUsage]:
        slug = feature.value if isinstance(feature, FeatureSlug) else str(feature)
        for index, raw in enumerate(record.features):
            if raw.get("slug") == slug:
                return index, FeatureUsage.model_validate(raw)
        raise FeatureNotFoundError(
            f"Feature {slug} not found in quota record for user {record.user_id}",
            resource_type="feature",
            resource_id=slug,
            details={"user_id": record.user_id, "tier_id": record.tier_id},
        )

    async def _write_usage(
        self,
        record: QuotaRecord,
        index: int,
        usage: FeatureUsage,
        usage_count: int,
        now: datetime,
    ) -> bool:
        """Write the whole feature list back if the record version is unchanged."""
        updated = usage.model_copy(update={"usage_count": usage_count, "last_used": now})
        features: list[dict[str, Any]] = [dict(f) for f in record.features]
        features[index] = updated.to_storage()

        expected_version = record.version
        result = await self.db.execute(
            update(QuotaRecord)
            .where(
                QuotaRecord.user_id == record.user_id,
                QuotaRecord.version == expected_version,
            )
            .values(
                features=features,
                version=expected_version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        if result.rowcount == 1:
            return True

        quota_write_conflicts_total.inc()
        self.logger.warning(
            "quota_write_conflict",
            user_id=record.user_id,
            expected_version=expected_version,
        )
        return False
