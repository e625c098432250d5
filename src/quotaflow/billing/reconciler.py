"""Lifecycle reconciler: applies billing events to user tiers and quotas.

Every tier change is archive-then-replace. The archive append is attempted
first and is best-effort: if it fails the failure is logged and counted and
the replacement still happens. There is no lock across the pair, so a quota
increment that lands between the archive read and the replacement is lost
with the old record.
"""

import enum
from typing import Any, Protocol

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.events import (
    PAID_ORDER_STATUSES,
    REVOKING_ORDER_STATUSES,
    BillingWebhookEvent,
    LedgerOnlyEvent,
    OrderStatus,
    OrderUpdated,
    SubscriptionCanceled,
    SubscriptionRevoked,
    SubscriptionUncanceled,
)
from quotaflow.billing.identity import IdentityResolver
from quotaflow.billing.models import QuotaRecord, Tier
from quotaflow.billing.quota_manager import Clock, QuotaLedger, utc_now
from quotaflow.billing.schemas import BulkUpdateResult, SweepResult
from quotaflow.core.config import MAX_BATCH_MUTATIONS
from quotaflow.core.exceptions import (
    InvalidInputError,
    MissingProductError,
    NotFoundError,
    UnknownOrderStatusError,
    UnprocessableEventError,
)
from quotaflow.core.logging import LoggerMixin
from quotaflow.core.metrics import (
    archive_failures_total,
    sweep_duration_seconds,
    track_tier_transition,
    track_time,
)
from quotaflow.models.user import User

# archive insert + user update + quota record replace
MUTATIONS_PER_TRANSITION = 3


class TransitionReason(str, enum.Enum):
    """Why a user's tier changed. Stored on archive entries."""

    ORDER_PAID = "order_paid"
    ORDER_REVOKED = "order_revoked"
    SUBSCRIPTION_REVOKED = "subscription_revoked"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    BULK_REASSIGN = "bulk_reassign"


class EventOutcome(str, enum.Enum):
    """What the reconciler did with one event."""

    PROCESSED = "processed"
    NO_OP = "no_op"
    LOGGED_ONLY = "logged_only"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class ReconcileResult(BaseModel):
    """Outcome of reconciling one billing event."""

    outcome: EventOutcome
    user_id: str | None = None
    tier_id: str | None = None
    message: str | None = None


class UpgradeNotifier(Protocol):
    """Receives a callback after a paid upgrade has been applied."""

    async def notify_upgrade(self, user: User, tier: Tier) -> None: ...


class LifecycleReconciler(LoggerMixin):
    """Drives the per-user ``{tier_id, canceled, subscription_period_end}`` state."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        default_tier_id: str,
        catalog: PlanCatalog | None = None,
        ledger: QuotaLedger | None = None,
        archive: QuotaArchive | None = None,
        identity: IdentityResolver | None = None,
        notifier: UpgradeNotifier | None = None,
        clock: Clock = utc_now,
        batch_size: int = MAX_BATCH_MUTATIONS,
    ) -> None:
        """Initialize lifecycle reconciler.

        Args:
            db: Database session
            default_tier_id: Tier users fall back to on revocation or expiry
            catalog: Plan catalog
            ledger: Quota ledger
            archive: Quota archive
            identity: Identity resolver
            notifier: Optional upgrade notification hook
            clock: Source of the current instant
            batch_size: Maximum mutations per committed batch in bulk jobs
        """
        self.db = db
        self.default_tier_id = default_tier_id
        self.clock = clock
        self.catalog = catalog or PlanCatalog(db)
        self.ledger = ledger or QuotaLedger(
            db,
            default_tier_id=default_tier_id,
            catalog=self.catalog,
            clock=clock,
        )
        self.archive = archive or QuotaArchive(db, clock=clock)
        self.identity = identity or IdentityResolver(db)
        self.notifier = notifier
        self.batch_size = max(1, min(batch_size, MAX_BATCH_MUTATIONS))

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(
        self,
        event: BillingWebhookEvent,
        *,
        is_duplicate: bool = False,
        suppress_duplicates: bool = False,
    ) -> ReconcileResult:
        """Apply one decoded event, converting expected failures to outcomes.

        Unprocessable events and lookup misses skip the transition and are
        logged; they never propagate to the webhook caller.

        Args:
            event: Decoded webhook event
            is_duplicate: The ledger already held this status for this type
            suppress_duplicates: Skip the transition for duplicates

        Returns:
            What happened to the event
        """
        if isinstance(event, LedgerOnlyEvent):
            self.logger.info(
                "billing_event_logged_only",
                event_type=event.event_type,
                checkout_id=event.transaction_id,
            )
            return ReconcileResult(outcome=EventOutcome.LOGGED_ONLY)

        if is_duplicate:
            self.logger.info(
                "billing_event_duplicate",
                event_type=event.event_type,
                checkout_id=event.transaction_id,
                status=event.status,
                suppressed=suppress_duplicates,
            )
            if suppress_duplicates:
                return ReconcileResult(outcome=EventOutcome.DUPLICATE)

        try:
            return await self.apply_event(event)
        except (UnprocessableEventError, NotFoundError) as e:
            self.logger.warning(
                "transition_skipped",
                event_type=event.event_type,
                checkout_id=event.transaction_id,
                error_code=e.error_code.value,
                error=e.message,
            )
            return ReconcileResult(outcome=EventOutcome.SKIPPED, message=e.message)

    async def apply_event(self, event: BillingWebhookEvent) -> ReconcileResult:
        """Apply one decoded event.

        Raises:
            UnprocessableEventError: If the event cannot drive a transition
            NotFoundError: If the user or tier cannot be resolved
        """
        if isinstance(event, OrderUpdated):
            return await self._on_order_updated(event)
        if isinstance(event, SubscriptionCanceled):
            return await self._on_subscription_canceled(event)
        if isinstance(event, SubscriptionUncanceled):
            return await self._on_subscription_uncanceled(event)
        if isinstance(event, SubscriptionRevoked):
            return await self._on_subscription_revoked(event)
        return ReconcileResult(outcome=EventOutcome.LOGGED_ONLY)

    async def _on_order_updated(self, event: OrderUpdated) -> ReconcileResult:
        try:
            status = OrderStatus(event.status or "")
        except ValueError:
            raise UnknownOrderStatusError(
                f"Unknown order status: {event.status}",
                event_type=event.event_type,
                details={"status": event.status},
            ) from None

        if not event.product_id:
            raise MissingProductError(event_type=event.event_type)

        user = await self.identity.resolve(event.identity)
        tier = await self.catalog.get_tier_by_external_product_ref(event.product_id)

        if status in PAID_ORDER_STATUSES:
            await self.transition_tier(user.id, tier.slug, reason=TransitionReason.ORDER_PAID)
            await self._notify_upgrade(user, tier)
            return ReconcileResult(
                outcome=EventOutcome.PROCESSED,
                user_id=user.id,
                tier_id=tier.slug,
            )

        if status in REVOKING_ORDER_STATUSES and user.tier_id == tier.slug:
            await self.transition_tier(
                user.id,
                self.default_tier_id,
                reason=TransitionReason.ORDER_REVOKED,
            )
            return ReconcileResult(
                outcome=EventOutcome.PROCESSED,
                user_id=user.id,
                tier_id=self.default_tier_id,
            )

        self.logger.info(
            "order_revocation_ignored",
            user_id=user.id,
            status=status.value,
            current_tier=user.tier_id,
            order_tier=tier.slug,
        )
        return ReconcileResult(
            outcome=EventOutcome.NO_OP,
            user_id=user.id,
            tier_id=user.tier_id,
            message=f"Tier not affected by {status.value} order",
        )

    async def _on_subscription_canceled(
        self,
        event: SubscriptionCanceled,
    ) -> ReconcileResult:
        user = await self.identity.resolve(event.identity)
        record = await self.ledger.ensure_quota_record(user.id)
        canceled_at = event.canceled_at or self.clock()

        if event.current_period_end is None:
            self.logger.warning(
                "subscription_period_end_missing",
                user_id=user.id,
                checkout_id=event.transaction_id,
            )

        await self._update_record_state(
            record,
            canceled=True,
            canceled_at=canceled_at,
            subscription_period_end=event.current_period_end,
        )
        self.logger.info(
            "subscription_canceled",
            user_id=user.id,
            tier_id=record.tier_id,
            subscription_period_end=(
                event.current_period_end.isoformat() if event.current_period_end else None
            ),
        )
        return ReconcileResult(
            outcome=EventOutcome.PROCESSED,
            user_id=user.id,
            tier_id=record.tier_id,
        )

    async def _on_subscription_uncanceled(
        self,
        event: SubscriptionUncanceled,
    ) -> ReconcileResult:
        user = await self.identity.resolve(event.identity)
        record = await self.ledger.ensure_quota_record(user.id)

        await self._update_record_state(
            record,
            canceled=False,
            canceled_at=None,
            subscription_period_end=None,
        )
        self.logger.info("subscription_uncanceled", user_id=user.id, tier_id=record.tier_id)
        return ReconcileResult(
            outcome=EventOutcome.PROCESSED,
            user_id=user.id,
            tier_id=record.tier_id,
        )

    async def _on_subscription_revoked(
        self,
        event: SubscriptionRevoked,
    ) -> ReconcileResult:
        user = await self.identity.resolve(event.identity)
        await self.transition_tier(
            user.id,
            self.default_tier_id,
            reason=TransitionReason.SUBSCRIPTION_REVOKED,
        )
        return ReconcileResult(
            outcome=EventOutcome.PROCESSED,
            user_id=user.id,
            tier_id=self.default_tier_id,
        )

    async def _update_record_state(self, record: QuotaRecord, **values: Any) -> None:
        await self.db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.user_id == record.user_id)
            .values(version=QuotaRecord.version + 1, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False),
        )

    async def _notify_upgrade(self, user: User, tier: Tier) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_upgrade(user, tier)
        except Exception as e:
            self.logger.warning(
                "upgrade_notification_failed",
                user_id=user.id,
                tier_id=tier.slug,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition_tier(
        self,
        user_id: str,
        tier_id: str,
        *,
        reason: TransitionReason,
    ) -> QuotaRecord:
        """Archive the user's record, move them to a tier and start fresh counters.

        Args:
            user_id: User ID
            tier_id: Target tier slug
            reason: Why the tier changes

        Returns:
            The new quota record

        Raises:
            TierNotFoundError: If the target tier does not exist
        """
        tier = await self.catalog.get_tier(tier_id)
        previous = await self.ledger.get_quota_record(user_id)
        from_tier = previous.tier_id if previous is not None else None

        if previous is None:
            self.logger.info("archive_skipped_no_record", user_id=user_id)
        else:
            try:
                async with self.db.begin_nested():
                    await self.archive.archive_record(previous, reason=reason.value)
            except Exception as e:
                archive_failures_total.inc()
                self.logger.warning(
                    "archive_failed",
                    user_id=user_id,
                    tier_id=from_tier,
                    error=str(e),
                )

        user = await self.db.get(User, user_id)
        if user is None:
            self.logger.warning("tier_transition_user_missing", user_id=user_id)
        else:
            user.tier_id = tier.slug
            await self.db.flush()

        record = await self.ledger.create_quota_record_from_tier(user_id, tier.slug)

        track_tier_transition(reason.value)
        self.logger.info(
            "tier_transition_applied",
            user_id=user_id,
            from_tier=from_tier,
            to_tier=tier.slug,
            reason=reason.value,
        )
        return record

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    @property
    def transitions_per_batch(self) -> int:
        return max(1, self.batch_size // MUTATIONS_PER_TRANSITION)

    async def archive_expired_subscriptions(self) -> SweepResult:
        """Downgrade every canceled subscription whose period has ended.

        Records are processed in batches, each committed before the next one
        is read. A crash mid-sweep leaves earlier batches applied; re-running
        only picks up records that are still canceled and expired.

        Returns:
            Number of users downgraded and batches committed
        """
        now = self.clock()
        archived = 0
        batches = 0
        last_user_id = ""

        with track_time(sweep_duration_seconds):
            while True:
                result = await self.db.execute(
                    select(QuotaRecord.user_id)
                    .where(
                        QuotaRecord.canceled.is_(True),
                        QuotaRecord.subscription_period_end.is_not(None),
                        QuotaRecord.subscription_period_end < now,
                        QuotaRecord.user_id > last_user_id,
                    )
                    .order_by(QuotaRecord.user_id)
                    .limit(self.transitions_per_batch),
                )
                user_ids = list(result.scalars().all())
                if not user_ids:
                    break

                for user_id in user_ids:
                    try:
                        await self.transition_tier(
                            user_id,
                            self.default_tier_id,
                            reason=TransitionReason.SUBSCRIPTION_EXPIRED,
                        )
                        archived += 1
                    except NotFoundError as e:
                        self.logger.error(
                            "expired_subscription_downgrade_failed",
                            user_id=user_id,
                            error=e.message,
                        )

                await self.db.commit()
                batches += 1
                last_user_id = user_ids[-1]
                self.logger.info(
                    "sweep_batch_committed",
                    batch=batches,
                    size=len(user_ids),
                )

        self.logger.info("expired_subscriptions_archived", archived_count=archived, batches=batches)
        return SweepResult(archived_count=archived, batches=batches)

    async def bulk_reassign_tier(
        self,
        from_tier_id: str,
        to_tier_id: str,
    ) -> BulkUpdateResult:
        """Move every user on one tier to another, archiving their records.

        Raises:
            InvalidInputError: If both tiers are the same
            TierNotFoundError: If the target tier does not exist
        """
        if from_tier_id == to_tier_id:
            raise InvalidInputError(
                "Source and target tier must differ",
                field="to_tier_id",
                value=to_tier_id,
            )
        await self.catalog.get_tier(to_tier_id)

        updated = 0
        batches = 0
        last_user_id = ""
        while True:
            result = await self.db.execute(
                select(User.id)
                .where(User.tier_id == from_tier_id, User.id > last_user_id)
                .order_by(User.id)
                .limit(self.transitions_per_batch),
            )
            user_ids = list(result.scalars().all())
            if not user_ids:
                break

            for user_id in user_ids:
                await self.transition_tier(
                    user_id,
                    to_tier_id,
                    reason=TransitionReason.BULK_REASSIGN,
                )
                updated += 1

            await self.db.commit()
            batches += 1
            last_user_id = user_ids[-1]

        self.logger.info(
            "bulk_tier_reassigned",
            from_tier=from_tier_id,
            to_tier=to_tier_id,
            updated_count=updated,
            batches=batches,
        )
        return BulkUpdateResult(updated_count=updated, batches=batches)

    async def backfill_default_tier(self) -> BulkUpdateResult:
        """Give every user without a tier the default tier.

        Only ``users.tier_id`` is written; quota records are created lazily on
        the next quota check.
        """
        await self.catalog.get_tier(self.default_tier_id)

        updated = 0
        batches = 0
        while True:
            result = await self.db.execute(
                select(User)
                .where(User.tier_id == "")
                .order_by(User.id)
                .limit(self.batch_size),
            )
            users = list(result.scalars().all())
            if not users:
                break

            for user in users:
                user.tier_id = self.default_tier_id
            await self.db.commit()
            updated += len(users)
            batches += 1

        self.logger.info(
            "default_tier_backfilled",
            tier_id=self.default_tier_id,
            updated_count=updated,
            batches=batches,
        )
        return BulkUpdateResult(updated_count=updated, batches=batches)
