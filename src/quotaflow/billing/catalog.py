"""Plan catalog: read-only tier lookups plus setup-time seeding."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.models import Tier
from quotaflow.billing.schemas import TierCreate
from quotaflow.billing.tier_features import DEFAULT_TIERS, validate_features
from quotaflow.core.exceptions import CatalogValidationError, TierNotFoundError
from quotaflow.core.logging import LoggerMixin


class PlanCatalog(LoggerMixin):
    """Lookups over the ``tiers`` table."""

    def __init__(self, db: AsyncSession) -> None:
        """Initialize plan catalog.

        Args:
            db: Database session
        """
        self.db = db

    async def get_tier(self, slug: str) -> Tier:
        """Get a tier by slug.

        Args:
            slug: Tier slug

        Returns:
            Tier

        Raises:
            TierNotFoundError: If no tier has this slug
        """
        tier = await self.db.get(Tier, slug)
        if tier is None:
            raise TierNotFoundError(
                f"Tier not found: {slug}",
                resource_type="tier",
                resource_id=slug,
            )
        return tier

    async def get_tier_by_external_product_ref(self, ref: str) -> Tier:
        """Get the tier sold as a given payment-provider product.

        Args:
            ref: Payment provider product identifier

        Returns:
            Tier

        Raises:
            TierNotFoundError: If no tier maps to this product
        """
        result = await self.db.execute(
            select(Tier).where(Tier.external_product_ref == ref).limit(1),
        )
        tier = result.scalar_one_or_none()
        if tier is None:
            raise TierNotFoundError(
                f"No tier found with external product ref: {ref}",
                resource_type="tier",
                resource_id=ref,
            )
        return tier

    async def list_tiers(self) -> list[Tier]:
        """List all tiers, cheapest first."""
        result = await self.db.execute(select(Tier).order_by(Tier.price, Tier.slug))
        return list(result.scalars().all())

    async def upsert_tier(self, tier_data: TierCreate) -> Tier:
        """Validate and write one tier definition.

        Args:
            tier_data: Tier definition

        Returns:
            The stored tier

        Raises:
            CatalogValidationError: If a feature breaks the quota invariant
        """
        error = validate_features(tier_data.features)
        if error:
            raise CatalogValidationError(
                f"Validation failed for tier {tier_data.slug}: {error}",
                field="features",
                constraint=error,
            )

        tier = await self.db.get(Tier, tier_data.slug)
        if tier is None:
            tier = Tier(slug=tier_data.slug)
            self.db.add(tier)

        tier.name = tier_data.name
        tier.description = tier_data.description
        tier.price = tier_data.price
        tier.plan_recurring_interval = tier_data.plan_recurring_interval
        tier.external_product_ref = tier_data.external_product_ref
        tier.features = [dict(f) for f in tier_data.features]

        await self.db.flush()
        self.logger.info("tier_seeded", slug=tier.slug, features=len(tier.features))
        return tier

    async def seed_tiers(
        self,
        tiers: list[dict[str, Any]] | None = None,
    ) -> list[Tier]:
        """Seed the catalog, skipping tiers that fail validation.

        Args:
            tiers: Tier definitions (defaults to the bundled catalog)

        Returns:
            Tiers that were written
        """
        seeded: list[Tier] = []
        for definition in tiers if tiers is not None else DEFAULT_TIERS:
            tier_data = TierCreate.model_validate(definition)
            try:
                seeded.append(await self.upsert_tier(tier_data))
            except CatalogValidationError as e:
                self.logger.error(
                    "tier_validation_failed",
                    slug=tier_data.slug,
                    error=e.message,
                )
        return seeded
