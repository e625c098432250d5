"""Tests for resolving billing events to users."""

import pytest

from quotaflow.billing.events import IdentityKeys
from quotaflow.billing.identity import IdentityResolver
from quotaflow.core.exceptions import MissingIdentificationError, UserNotFoundError
from quotaflow.models.user import User


@pytest.fixture
def resolver(db_session) -> IdentityResolver:
    return IdentityResolver(db_session)


class TestIdentityResolver:
    """Test key precedence and failure modes."""

    async def test_user_id_wins(
        self,
        resolver: IdentityResolver,
        starter_user: User,
        pro_user: User,
    ) -> None:
        keys = IdentityKeys(user_id=starter_user.id, email=pro_user.email)

        assert (await resolver.resolve(keys)).id == starter_user.id

    async def test_falls_back_to_email(
        self,
        resolver: IdentityResolver,
        starter_user: User,
    ) -> None:
        keys = IdentityKeys(user_id="unknown", email="starter@example.com")

        assert (await resolver.resolve(keys)).id == starter_user.id

    async def test_falls_back_to_customer_id(
        self,
        resolver: IdentityResolver,
        pro_user: User,
    ) -> None:
        keys = IdentityKeys(email="nobody@example.com", customer_id="cus_pro")

        assert (await resolver.resolve(keys)).id == pro_user.id

    async def test_email_wins_over_customer_id(
        self,
        resolver: IdentityResolver,
        starter_user: User,
        pro_user: User,
    ) -> None:
        keys = IdentityKeys(email=starter_user.email, customer_id="cus_pro")

        assert (await resolver.resolve(keys)).id == starter_user.id

    async def test_no_keys(self, resolver: IdentityResolver) -> None:
        with pytest.raises(MissingIdentificationError):
            await resolver.resolve(IdentityKeys())

    async def test_no_match(self, resolver: IdentityResolver, starter_user: User) -> None:
        keys = IdentityKeys(user_id="ghost", customer_id="cus_ghost")

        with pytest.raises(UserNotFoundError) as exc_info:
            await resolver.resolve(keys)

        assert exc_info.value.details["keys"] == ["user_id", "customer_id"]
