"""User model carrying the billing correlation keys."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from quotaflow.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Internal user record.

    ``email`` and ``external_customer_id`` are the only stable links from a
    payment-provider event back to this row; ``id`` is the internal user id
    that checkouts carry in ``metadata.user_id``.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    display_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    tier_id: Mapped[str] = mapped_column(
        String(64),
        default="",
        nullable=False,
        index=True,
    )
    external_customer_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        index=True,
    )
