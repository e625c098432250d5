"""Plan catalog, quota ledger and subscription lifecycle module."""

from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.event_ledger import BillingEventLedger
from quotaflow.billing.identity import IdentityResolver
from quotaflow.billing.models import BillingEvent, QuotaArchiveEntry, QuotaRecord, Tier
from quotaflow.billing.quota_manager import QuotaLedger
from quotaflow.billing.reconciler import LifecycleReconciler, UpgradeNotifier
from quotaflow.billing.tier_features import DEFAULT_TIERS, UNLIMITED_QUOTA, FeatureSlug

__all__ = [
    "DEFAULT_TIERS",
    "UNLIMITED_QUOTA",
    "BillingEvent",
    "BillingEventLedger",
    "FeatureSlug",
    "IdentityResolver",
    "LifecycleReconciler",
    "PlanCatalog",
    "QuotaArchive",
    "QuotaArchiveEntry",
    "QuotaLedger",
    "QuotaRecord",
    "Tier",
    "UpgradeNotifier",
]
