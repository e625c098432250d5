"""Celery tasks for subscription lifecycle jobs."""

import asyncio
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any, TypeVar

from celery import shared_task

from quotaflow.billing.reconciler import LifecycleReconciler
from quotaflow.core.config import get_settings
from quotaflow.core.database import Database
from quotaflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@shared_task(bind=True, name="quotaflow.billing.tasks.archive_expired_subscriptions")  # type: ignore[untyped-decorator]
def archive_expired_subscriptions(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Downgrade canceled subscriptions whose billing period has ended."""
    logger.info("task_started", task="archive_expired_subscriptions")
    try:
        result = run_async(_archive_expired_subscriptions_async())
    except Exception as e:
        logger.error("task_failed", task="archive_expired_subscriptions", error=str(e))
        raise
    logger.info("task_completed", task="archive_expired_subscriptions", result=result)
    return result


async def _archive_expired_subscriptions_async() -> dict[str, Any]:
    """Async implementation of the expired subscription sweep."""
    settings = get_settings()
    database = Database.from_settings(settings)
    database.connect()
    try:
        async with database.session() as session:
            reconciler = LifecycleReconciler(
                session,
                default_tier_id=settings.default_tier_id,
                batch_size=settings.quota_bulk_batch_size,
            )
            sweep = await reconciler.archive_expired_subscriptions()
    finally:
        await database.dispose()

    return {
        "archived_count": sweep.archived_count,
        "batches": sweep.batches,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@shared_task(bind=True, name="quotaflow.billing.tasks.backfill_default_tier")  # type: ignore[untyped-decorator]
def backfill_default_tier(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Assign the default tier to users that have none."""
    return run_async(_backfill_default_tier_async())


async def _backfill_default_tier_async() -> dict[str, Any]:
    settings = get_settings()
    database = Database.from_settings(settings)
    database.connect()
    try:
        async with database.session() as session:
            reconciler = LifecycleReconciler(
                session,
                default_tier_id=settings.default_tier_id,
                batch_size=settings.quota_bulk_batch_size,
            )
            backfill = await reconciler.backfill_default_tier()
    finally:
        await database.dispose()

    return {"updated_count": backfill.updated_count, "batches": backfill.batches}


@shared_task(bind=True, name="quotaflow.billing.tasks.bulk_reassign_tier")  # type: ignore[untyped-decorator]
def bulk_reassign_tier(_self: Any, from_tier_id: str, to_tier_id: str) -> dict[str, Any]:  # noqa: ARG001
    """Move every user on ``from_tier_id`` to ``to_tier_id``."""
    logger.info(
        "task_started",
        task="bulk_reassign_tier",
        from_tier=from_tier_id,
        to_tier=to_tier_id,
    )
    result = run_async(_bulk_reassign_tier_async(from_tier_id, to_tier_id))
    logger.info("task_completed", task="bulk_reassign_tier", result=result)
    return result


async def _bulk_reassign_tier_async(from_tier_id: str, to_tier_id: str) -> dict[str, Any]:
    settings = get_settings()
    database = Database.from_settings(settings)
    database.connect()
    try:
        async with database.session() as session:
            reconciler = LifecycleReconciler(
                session,
                default_tier_id=settings.default_tier_id,
                batch_size=settings.quota_bulk_batch_size,
            )
            reassigned = await reconciler.bulk_reassign_tier(from_tier_id, to_tier_id)
    finally:
        await database.dispose()

    return {
        "from_tier": from_tier_id,
        "to_tier": to_tier_id,
        "updated_count": reassigned.updated_count,
        "batches": reassigned.batches,
    }
