"""QuotaFlow: plan quotas and subscription lifecycle reconciliation."""

__version__ = "0.1.0"
