"""Tests for the lifecycle reconciler."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.events import (
    IdentityKeys,
    LedgerOnlyEvent,
    OrderUpdated,
    SubscriptionCanceled,
    SubscriptionRevoked,
    SubscriptionUncanceled,
)
from quotaflow.billing.intervals import ensure_utc
from quotaflow.billing.quota_manager import QuotaLedger
from quotaflow.billing.reconciler import (
    EventOutcome,
    LifecycleReconciler,
    TransitionReason,
)
from quotaflow.core.database import Database
from quotaflow.core.exceptions import (
    InvalidInputError,
    TierNotFoundError,
    UnknownOrderStatusError,
)
from quotaflow.models.user import User


@pytest_asyncio.fixture
async def savepoint_session() -> AsyncGenerator[AsyncSession, None]:
    """Session on a SQLite database where SAVEPOINTs scope correctly."""
    database = Database(
        "sqlite+aiosqlite:///:memory:",
        sqlite_savepoints=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    database.connect()
    await database.create_all()
    async with database.session() as session:
        yield session
    await database.dispose()


def _order(status: str, product_id: str | None, **identity: str) -> OrderUpdated:
    return OrderUpdated(
        transaction_id="chk_1",
        status=status,
        product_id=product_id,
        identity=IdentityKeys(**identity),
    )


def _canceled(user_id: str, period_end: datetime | None, **kwargs) -> SubscriptionCanceled:
    return SubscriptionCanceled(
        transaction_id=f"sub_{user_id}",
        status="active",
        identity=IdentityKeys(user_id=user_id),
        current_period_end=period_end,
        **kwargs,
    )


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def notifying_reconciler(
    db_session: AsyncSession,
    catalog: PlanCatalog,
    ledger: QuotaLedger,
    archive: QuotaArchive,
    clock,
    notifier: AsyncMock,
) -> LifecycleReconciler:
    return LifecycleReconciler(
        db_session,
        default_tier_id="starter",
        catalog=catalog,
        ledger=ledger,
        archive=archive,
        notifier=notifier,
        clock=clock,
    )


class TestOrderUpdated:
    """Test order lifecycle events."""

    async def test_paid_order_upgrades_user(
        self,
        notifying_reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        archive: QuotaArchive,
        starter_user: User,
        product_refs: dict[str, str],
        notifier: AsyncMock,
    ) -> None:
        await ledger.consume_quota(starter_user.id, "ai_proposals")

        result = await notifying_reconciler.handle_event(
            _order("paid", product_refs["pro"], email="starter@example.com"),
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert result.tier_id == "pro"
        assert starter_user.tier_id == "pro"

        record = await ledger.require_quota_record(starter_user.id)
        assert record.tier_id == "pro"
        assert all(f["usage_count"] == 0 for f in record.features)

        entries = await archive.list_entries(starter_user.id)
        assert len(entries) == 1
        assert entries[0].tier_id == "starter"
        assert entries[0].reason == TransitionReason.ORDER_PAID.value
        archived = next(f for f in entries[0].features if f["slug"] == "ai_proposals")
        assert archived["usage_count"] == 1

        notifier.notify_upgrade.assert_awaited_once()
        user, tier = notifier.notify_upgrade.await_args.args
        assert user.id == starter_user.id
        assert tier.slug == "pro"

    @pytest.mark.parametrize("status", ["pending", "paid", "active", "completed"])
    async def test_every_paid_status_upgrades(
        self,
        reconciler: LifecycleReconciler,
        starter_user: User,
        product_refs: dict[str, str],
        status: str,
    ) -> None:
        result = await reconciler.handle_event(
            _order(status, product_refs["plus"], user_id=starter_user.id),
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert starter_user.tier_id == "plus"

    async def test_first_transition_skips_archive(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        ledger: QuotaLedger,
        starter_user: User,
        product_refs: dict[str, str],
    ) -> None:
        await reconciler.handle_event(_order("paid", product_refs["plus"], user_id=starter_user.id))

        assert await archive.count_entries(starter_user.id) == 0
        assert (await ledger.require_quota_record(starter_user.id)).tier_id == "plus"

    async def test_notifier_failure_does_not_block_upgrade(
        self,
        notifying_reconciler: LifecycleReconciler,
        starter_user: User,
        product_refs: dict[str, str],
        notifier: AsyncMock,
    ) -> None:
        notifier.notify_upgrade.side_effect = RuntimeError("mail server down")

        result = await notifying_reconciler.handle_event(
            _order("paid", product_refs["pro"], user_id=starter_user.id),
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert starter_user.tier_id == "pro"

    @pytest.mark.parametrize("status", ["refunded", "partially_refunded", "canceled"])
    async def test_revoking_current_tier_downgrades(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        ledger: QuotaLedger,
        pro_user: User,
        product_refs: dict[str, str],
        status: str,
    ) -> None:
        result = await reconciler.handle_event(
            _order(status, product_refs["pro"], customer_id="cus_pro"),
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert pro_user.tier_id == "starter"
        assert (await ledger.require_quota_record(pro_user.id)).tier_id == "starter"
        entry = await archive.latest_entry(pro_user.id)
        assert entry is not None
        assert entry.tier_id == "pro"
        assert entry.reason == TransitionReason.ORDER_REVOKED.value

    async def test_refund_of_other_tier_is_no_op(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        pro_user: User,
        product_refs: dict[str, str],
    ) -> None:
        result = await reconciler.handle_event(
            _order("refunded", product_refs["plus"], user_id=pro_user.id),
        )

        assert result.outcome == EventOutcome.NO_OP
        assert pro_user.tier_id == "pro"
        assert await archive.count_entries(pro_user.id) == 0

    async def test_unknown_status_is_skipped(
        self,
        reconciler: LifecycleReconciler,
        starter_user: User,
        product_refs: dict[str, str],
    ) -> None:
        event = _order("disputed", product_refs["pro"], user_id=starter_user.id)

        with pytest.raises(UnknownOrderStatusError):
            await reconciler.apply_event(event)

        result = await reconciler.handle_event(event)
        assert result.outcome == EventOutcome.SKIPPED
        assert starter_user.tier_id == "starter"

    async def test_missing_product_is_skipped(
        self,
        reconciler: LifecycleReconciler,
        starter_user: User,
    ) -> None:
        result = await reconciler.handle_event(_order("paid", None, user_id=starter_user.id))

        assert result.outcome == EventOutcome.SKIPPED
        assert starter_user.tier_id == "starter"

    async def test_unknown_product_is_skipped(
        self,
        reconciler: LifecycleReconciler,
        starter_user: User,
    ) -> None:
        result = await reconciler.handle_event(
            _order("paid", "prod_unknown", user_id=starter_user.id),
        )

        assert result.outcome == EventOutcome.SKIPPED

    async def test_unidentified_event_is_skipped(
        self,
        reconciler: LifecycleReconciler,
        catalog: PlanCatalog,
        product_refs: dict[str, str],
    ) -> None:
        result = await reconciler.handle_event(_order("paid", product_refs["pro"]))

        assert result.outcome == EventOutcome.SKIPPED

    async def test_unknown_user_is_skipped(
        self,
        reconciler: LifecycleReconciler,
        product_refs: dict[str, str],
    ) -> None:
        result = await reconciler.handle_event(
            _order("paid", product_refs["pro"], email="ghost@example.com"),
        )

        assert result.outcome == EventOutcome.SKIPPED


class TestSubscriptionEvents:
    """Test cancel, uncancel and revoke."""

    async def test_cancel_keeps_tier_until_period_end(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        pro_user: User,
    ) -> None:
        canceled_at = datetime(2026, 1, 7, 12, 0, tzinfo=UTC)
        period_end = datetime(2026, 2, 1, tzinfo=UTC)

        result = await reconciler.handle_event(
            _canceled(pro_user.id, period_end, canceled_at=canceled_at),
        )

        assert result.outcome == EventOutcome.PROCESSED
        record = await ledger.require_quota_record(pro_user.id)
        assert record.tier_id == "pro"
        assert record.canceled is True
        assert ensure_utc(record.canceled_at) == canceled_at
        assert ensure_utc(record.subscription_period_end) == period_end
        assert pro_user.tier_id == "pro"

    async def test_cancel_without_timestamp_uses_clock(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        pro_user: User,
        clock,
    ) -> None:
        await reconciler.handle_event(_canceled(pro_user.id, None))

        record = await ledger.require_quota_record(pro_user.id)
        assert record.canceled is True
        assert ensure_utc(record.canceled_at) == clock()
        assert record.subscription_period_end is None

    async def test_cancel_creates_missing_record(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        starter_user: User,
    ) -> None:
        await reconciler.handle_event(_canceled(starter_user.id, datetime(2026, 2, 1, tzinfo=UTC)))

        record = await ledger.require_quota_record(starter_user.id)
        assert record.canceled is True

    async def test_cancel_preserves_usage(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        pro_user: User,
    ) -> None:
        await ledger.consume_quota(pro_user.id, "advanced_ai_insights")

        await reconciler.handle_event(_canceled(pro_user.id, datetime(2026, 2, 1, tzinfo=UTC)))

        result = await ledger.check_quota(pro_user.id, "advanced_ai_insights")
        assert result.count == 1

    async def test_uncancel_clears_cancellation(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        pro_user: User,
    ) -> None:
        await reconciler.handle_event(_canceled(pro_user.id, datetime(2026, 2, 1, tzinfo=UTC)))

        result = await reconciler.handle_event(
            SubscriptionUncanceled(identity=IdentityKeys(user_id=pro_user.id)),
        )

        assert result.outcome == EventOutcome.PROCESSED
        record = await ledger.require_quota_record(pro_user.id)
        assert record.canceled is False
        assert record.canceled_at is None
        assert record.subscription_period_end is None
        assert record.tier_id == "pro"

    async def test_revoke_downgrades_immediately(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        archive: QuotaArchive,
        pro_user: User,
    ) -> None:
        result = await reconciler.handle_event(
            SubscriptionRevoked(identity=IdentityKeys(email="pro@example.com")),
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert result.tier_id == "starter"
        assert pro_user.tier_id == "starter"
        assert (await ledger.require_quota_record(pro_user.id)).tier_id == "starter"
        entry = await archive.latest_entry(pro_user.id)
        assert entry is not None
        assert entry.reason == TransitionReason.SUBSCRIPTION_REVOKED.value

    async def test_ledger_only_event(
        self,
        reconciler: LifecycleReconciler,
        pro_user: User,
    ) -> None:
        event = LedgerOnlyEvent(
            event_type="subscription.updated",
            identity=IdentityKeys(user_id=pro_user.id),
        )

        result = await reconciler.handle_event(event)

        assert result.outcome == EventOutcome.LOGGED_ONLY
        assert pro_user.tier_id == "pro"


class TestDuplicates:
    """Test duplicate delivery handling."""

    async def test_duplicates_are_reprocessed_by_default(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        pro_user: User,
    ) -> None:
        event = SubscriptionRevoked(identity=IdentityKeys(user_id=pro_user.id))

        await reconciler.handle_event(event)
        result = await reconciler.handle_event(event, is_duplicate=True)

        assert result.outcome == EventOutcome.PROCESSED
        assert await archive.count_entries(pro_user.id) == 2

    async def test_duplicates_can_be_suppressed(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        pro_user: User,
    ) -> None:
        event = SubscriptionRevoked(identity=IdentityKeys(user_id=pro_user.id))

        result = await reconciler.handle_event(
            event,
            is_duplicate=True,
            suppress_duplicates=True,
        )

        assert result.outcome == EventOutcome.DUPLICATE
        assert pro_user.tier_id == "pro"
        assert await archive.count_entries(pro_user.id) == 0


class TestTransitionTier:
    """Test archive-then-replace."""

    async def test_archive_constraint_failure_does_not_block_transition(
        self,
        savepoint_session: AsyncSession,
        clock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        catalog = PlanCatalog(savepoint_session)
        await catalog.seed_tiers()
        savepoint_session.add(User(id="user-pro", email="pro@example.com", tier_id="pro"))
        ledger = QuotaLedger(
            savepoint_session,
            default_tier_id="starter",
            catalog=catalog,
            clock=clock,
        )
        archive = QuotaArchive(savepoint_session, clock=clock)
        reconciler = LifecycleReconciler(
            savepoint_session,
            default_tier_id="starter",
            catalog=catalog,
            ledger=ledger,
            archive=archive,
            clock=clock,
        )
        await ledger.create_quota_record_from_tier("user-pro", "pro")
        await archive.archive_record(await ledger.require_quota_record("user-pro"))
        await savepoint_session.commit()

        # A concurrent transition already took sequence 1
        monkeypatch.setattr(archive, "next_sequence", AsyncMock(return_value=1))
        before = REGISTRY.get_sample_value("quotaflow_archive_failures_total") or 0.0

        record = await reconciler.transition_tier(
            "user-pro",
            "starter",
            reason=TransitionReason.SUBSCRIPTION_REVOKED,
        )
        await savepoint_session.commit()

        assert record.tier_id == "starter"
        assert (await ledger.require_quota_record("user-pro")).tier_id == "starter"
        user = await savepoint_session.get(User, "user-pro", populate_existing=True)
        assert user is not None
        assert user.tier_id == "starter"
        assert await archive.count_entries("user-pro") == 1
        after = REGISTRY.get_sample_value("quotaflow_archive_failures_total")
        assert after == before + 1

    async def test_unknown_target_tier(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        pro_user: User,
    ) -> None:
        with pytest.raises(TierNotFoundError):
            await reconciler.transition_tier(
                pro_user.id,
                "enterprise",
                reason=TransitionReason.BULK_REASSIGN,
            )

        assert pro_user.tier_id == "pro"
        assert await archive.count_entries(pro_user.id) == 0

    async def test_transition_without_user_row(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        catalog: PlanCatalog,
    ) -> None:
        record = await reconciler.transition_tier(
            "orphan",
            "plus",
            reason=TransitionReason.BULK_REASSIGN,
        )

        assert record.user_id == "orphan"
        assert (await ledger.require_quota_record("orphan")).tier_id == "plus"


class TestExpiredSubscriptionSweep:
    """Test the periodic downgrade of ended subscriptions."""

    async def test_only_expired_cancellations_are_downgraded(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        archive: QuotaArchive,
        make_user,
        clock,
    ) -> None:
        expired = await make_user("user-expired", tier_id="pro")
        pending = await make_user("user-pending", tier_id="pro")
        open_ended = await make_user("user-open-ended", tier_id="pro")
        active = await make_user("user-active", tier_id="pro")
        for user in (expired, pending, open_ended, active):
            await ledger.ensure_quota_record(user.id)

        await reconciler.handle_event(_canceled(expired.id, clock() - timedelta(days=1)))
        await reconciler.handle_event(_canceled(pending.id, clock() + timedelta(days=10)))
        await reconciler.handle_event(_canceled(open_ended.id, None))

        result = await reconciler.archive_expired_subscriptions()

        assert result.archived_count == 1
        assert result.batches == 1
        assert expired.tier_id == "starter"
        assert (await ledger.require_quota_record(expired.id)).canceled is False
        entry = await archive.latest_entry(expired.id)
        assert entry is not None
        assert entry.reason == TransitionReason.SUBSCRIPTION_EXPIRED.value
        assert entry.canceled is True
        for user in (pending, open_ended, active):
            assert user.tier_id == "pro"
            assert (await ledger.require_quota_record(user.id)).tier_id == "pro"

    async def test_period_end_at_now_is_not_expired(
        self,
        reconciler: LifecycleReconciler,
        pro_user: User,
        clock,
    ) -> None:
        await reconciler.handle_event(_canceled(pro_user.id, clock()))

        result = await reconciler.archive_expired_subscriptions()

        assert result.archived_count == 0
        assert pro_user.tier_id == "pro"

    async def test_sweep_commits_in_batches(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        ledger: QuotaLedger,
        archive: QuotaArchive,
        make_user,
        clock,
    ) -> None:
        reconciler = LifecycleReconciler(
            db_session,
            default_tier_id="starter",
            catalog=catalog,
            ledger=ledger,
            archive=archive,
            clock=clock,
            batch_size=6,
        )
        assert reconciler.transitions_per_batch == 2

        for index in range(5):
            user = await make_user(f"user-{index}", tier_id="plus")
            await ledger.ensure_quota_record(user.id)
            await reconciler.handle_event(_canceled(user.id, clock() - timedelta(hours=1)))

        result = await reconciler.archive_expired_subscriptions()

        assert result.archived_count == 5
        assert result.batches == 3

    async def test_sweep_is_idempotent(
        self,
        reconciler: LifecycleReconciler,
        archive: QuotaArchive,
        pro_user: User,
        clock,
    ) -> None:
        await reconciler.handle_event(_canceled(pro_user.id, clock() - timedelta(days=1)))

        first = await reconciler.archive_expired_subscriptions()
        second = await reconciler.archive_expired_subscriptions()

        assert first.archived_count == 1
        assert second.archived_count == 0
        assert second.batches == 0
        assert await archive.count_entries(pro_user.id) == 1

    async def test_expiry_becomes_due_as_time_passes(
        self,
        reconciler: LifecycleReconciler,
        pro_user: User,
        clock,
    ) -> None:
        await reconciler.handle_event(_canceled(pro_user.id, clock() + timedelta(days=3)))

        assert (await reconciler.archive_expired_subscriptions()).archived_count == 0

        clock.advance(days=4)
        assert (await reconciler.archive_expired_subscriptions()).archived_count == 1
        assert pro_user.tier_id == "starter"


class TestBulkJobs:
    """Test batched tier maintenance jobs."""

    def test_batch_size_is_capped(self, db_session: AsyncSession) -> None:
        reconciler = LifecycleReconciler(db_session, default_tier_id="starter", batch_size=5000)

        assert reconciler.batch_size == 500
        assert reconciler.transitions_per_batch == 166

    def test_small_batch_still_moves_one_user(self, db_session: AsyncSession) -> None:
        reconciler = LifecycleReconciler(db_session, default_tier_id="starter", batch_size=1)

        assert reconciler.transitions_per_batch == 1

    async def test_bulk_reassign(
        self,
        reconciler: LifecycleReconciler,
        ledger: QuotaLedger,
        archive: QuotaArchive,
        make_user,
        starter_user: User,
    ) -> None:
        first = await make_user("user-plus-1", tier_id="plus")
        second = await make_user("user-plus-2", tier_id="plus")
        await ledger.ensure_quota_record(first.id)

        result = await reconciler.bulk_reassign_tier("plus", "pro")

        assert result.updated_count == 2
        assert result.batches == 1
        assert first.tier_id == "pro"
        assert second.tier_id == "pro"
        assert starter_user.tier_id == "starter"
        assert await archive.count_entries(first.id) == 1
        assert await archive.count_entries(second.id) == 0
        assert (await ledger.require_quota_record(second.id)).tier_id == "pro"

    async def test_bulk_reassign_same_tier(self, reconciler: LifecycleReconciler) -> None:
        with pytest.raises(InvalidInputError):
            await reconciler.bulk_reassign_tier("plus", "plus")

    async def test_bulk_reassign_unknown_target(self, reconciler: LifecycleReconciler) -> None:
        with pytest.raises(TierNotFoundError):
            await reconciler.bulk_reassign_tier("plus", "enterprise")

    async def test_backfill_default_tier(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        make_user,
        pro_user: User,
    ) -> None:
        reconciler = LifecycleReconciler(
            db_session,
            default_tier_id="starter",
            catalog=catalog,
            batch_size=2,
        )
        users = [await make_user(f"user-new-{i}", tier_id="") for i in range(3)]

        result = await reconciler.backfill_default_tier()

        assert result.updated_count == 3
        assert result.batches == 2
        assert all(user.tier_id == "starter" for user in users)
        assert pro_user.tier_id == "pro"
