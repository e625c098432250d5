"""Resolution of payment-provider events to internal users."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.events import IdentityKeys
from quotaflow.core.exceptions import MissingIdentificationError, UserNotFoundError
from quotaflow.core.logging import LoggerMixin
from quotaflow.models.user import User


class IdentityResolver(LoggerMixin):
    """Maps event correlation keys to a ``User``.

    Keys are tried in order and the first hit wins: internal user id, then
    email, then the provider's customer id.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def resolve(self, keys: IdentityKeys) -> User:
        """Find the user an event refers to.

        Args:
            keys: Correlation keys extracted from the event payload

        Returns:
            The matching user

        Raises:
            MissingIdentificationError: If the payload carries no key at all
            UserNotFoundError: If every key present misses
        """
        if keys.is_empty:
            raise MissingIdentificationError(
                details={"keys": []},
            )

        if keys.user_id:
            user = await self.db.get(User, keys.user_id)
            if user is not None:
                self._log_match(user, "user_id")
                return user

        if keys.email:
            user = await self._find_one(User.email == keys.email)
            if user is not None:
                self._log_match(user, "email")
                return user

        if keys.customer_id:
            user = await self._find_one(User.external_customer_id == keys.customer_id)
            if user is not None:
                self._log_match(user, "customer_id")
                return user

        raise UserNotFoundError(
            "No user matches the event identification",
            resource_type="user",
            details={
                "keys": [
                    name
                    for name, value in keys.model_dump().items()
                    if value
                ],
            },
        )

    async def _find_one(self, condition) -> User | None:
        result = await self.db.execute(select(User).where(condition).limit(1))
        return result.scalar_one_or_none()

    def _log_match(self, user: User, key: str) -> None:
        self.logger.debug(
            "identity_resolved",
            user_id=user.id,
            email=user.email,
            matched_on=key,
        )
