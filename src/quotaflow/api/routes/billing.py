"""Billing webhook, plan catalog and lifecycle job routes."""

import json
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.api.dependencies.database import get_db
from quotaflow.api.dependencies.rate_limiting import rate_limit_ingress
from quotaflow.api.dependencies.services import (
    get_billing_event_ledger,
    get_plan_catalog,
    get_reconciler,
)
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.event_ledger import BillingEventLedger
from quotaflow.billing.events import UnrecognizedEvent, decode_webhook
from quotaflow.billing.reconciler import LifecycleReconciler
from quotaflow.billing.schemas import SweepResult, TierResponse, WebhookAck
from quotaflow.core.config import Settings, get_settings
from quotaflow.core.exceptions import AuthorizationError, InvalidInputError
from quotaflow.core.logging import bind_contextvars, get_logger
from quotaflow.core.metrics import track_webhook_event

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/webhook",
    response_model=WebhookAck,
    dependencies=[Depends(rate_limit_ingress)],
)
async def billing_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    event_ledger: Annotated[BillingEventLedger, Depends(get_billing_event_ledger)],
    reconciler: Annotated[LifecycleReconciler, Depends(get_reconciler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> WebhookAck:
    """Receive a payment-provider webhook.

    Every parseable delivery is acknowledged. The ledger write is committed
    before the reconciler runs, so a failed transition never loses the event.

    Raises:
        InvalidInputError: If the body is not JSON
    """
    try:
        body = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("billing_webhook_invalid_json", error=str(e))
        raise InvalidInputError("Invalid payment webhook data format.") from None

    event = decode_webhook(body)
    if isinstance(event, UnrecognizedEvent):
        logger.info(
            "billing_event_ignored",
            event_type=event.event_type,
            reason=event.reason,
        )
        track_webhook_event("unrecognized", "ignored")
        return WebhookAck(
            event_type=event.event_type,
            outcome="ignored",
            message=event.reason,
        )

    bind_contextvars(event_type=event.event_type, checkout_id=event.transaction_id)

    is_duplicate = False
    if event.transaction_id is None:
        logger.warning("billing_event_missing_transaction_id")
    else:
        is_duplicate = await event_ledger.is_duplicate(
            event.transaction_id,
            event.event_type,
            event.status,
        )
        await event_ledger.record_event(
            event.transaction_id,
            event.event_type,
            event.data,
            event.status,
            created_at=event.created_at,
            updated_at=event.updated_at,
        )
        await db.commit()

    try:
        result = await reconciler.handle_event(
            event,
            is_duplicate=is_duplicate,
            suppress_duplicates=settings.webhook_duplicate_suppression,
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("billing_event_reconcile_failed", error=str(e))
        track_webhook_event(event.event_type, "failed")
        return WebhookAck(
            event_type=event.event_type,
            outcome="failed",
            message="Event recorded; transition failed",
        )

    track_webhook_event(event.event_type, result.outcome.value)
    return WebhookAck(
        event_type=event.event_type,
        outcome=result.outcome.value,
        message=result.message,
    )


@router.get("/tiers", response_model=list[TierResponse])
async def list_tiers(
    catalog: Annotated[PlanCatalog, Depends(get_plan_catalog)],
) -> list[TierResponse]:
    """List all tiers, cheapest first."""
    tiers = await catalog.list_tiers()
    return [TierResponse.model_validate(tier) for tier in tiers]


@router.get("/tiers/{slug}", response_model=TierResponse)
async def get_tier(
    slug: str,
    catalog: Annotated[PlanCatalog, Depends(get_plan_catalog)],
) -> TierResponse:
    """Get one tier by slug.

    Raises:
        TierNotFoundError: If no tier has this slug
    """
    return TierResponse.model_validate(await catalog.get_tier(slug))


@router.post("/cron/archive-expired", response_model=SweepResult)
async def archive_expired_subscriptions(
    reconciler: Annotated[LifecycleReconciler, Depends(get_reconciler)],
    settings: Annotated[Settings, Depends(get_settings)],
    x_cron_secret: Annotated[str | None, Header()] = None,
) -> SweepResult:
    """Run the expired-subscription sweep on demand.

    When a cron secret is configured the caller must send it in
    ``X-Cron-Secret``.

    Raises:
        AuthorizationError: If the secret is missing or wrong
    """
    if settings.cron_secret and not secrets.compare_digest(
        x_cron_secret or "",
        settings.cron_secret,
    ):
        raise AuthorizationError("Invalid cron secret")

    result = await reconciler.archive_expired_subscriptions()
    logger.info(
        "cron_sweep_completed",
        archived_count=result.archived_count,
        batches=result.batches,
    )
    return result
