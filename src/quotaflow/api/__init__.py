"""HTTP API for QuotaFlow."""
