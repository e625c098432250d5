"""Service dependencies shared by the billing and quota routes."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.api.dependencies.database import get_db
from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.event_ledger import BillingEventLedger
from quotaflow.billing.quota_manager import QuotaLedger
from quotaflow.billing.reconciler import LifecycleReconciler, UpgradeNotifier
from quotaflow.core.config import Settings, get_settings


async def get_plan_catalog(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanCatalog:
    return PlanCatalog(db)


async def get_quota_ledger(
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> QuotaLedger:
    """Dependency to get the quota ledger.

    Args:
        db: Database session
        settings: Application settings

    Returns:
        QuotaLedger instance
    """
    return QuotaLedger(
        db,
        default_tier_id=settings.default_tier_id,
        max_retries=settings.quota_increment_max_retries,
    )


async def get_quota_archive(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> QuotaArchive:
    return QuotaArchive(db)


async def get_billing_event_ledger(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BillingEventLedger:
    return BillingEventLedger(db)


def get_upgrade_notifier(request: Request) -> UpgradeNotifier | None:
    """Notifier registered on the application, if any."""
    return getattr(request.app.state, "upgrade_notifier", None)


async def get_reconciler(
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    notifier: Annotated[UpgradeNotifier | None, Depends(get_upgrade_notifier)],
) -> LifecycleReconciler:
    """Dependency to get the lifecycle reconciler.

    Args:
        db: Database session
        settings: Application settings
        notifier: Optional upgrade notification hook

    Returns:
        LifecycleReconciler instance
    """
    return LifecycleReconciler(
        db,
        default_tier_id=settings.default_tier_id,
        notifier=notifier,
        batch_size=settings.quota_bulk_batch_size,
    )
