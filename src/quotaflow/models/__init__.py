"""Database models."""

from quotaflow.models.base import Base, TimestampMixin
from quotaflow.models.user import User

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
]
