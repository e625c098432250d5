"""Quota check and consumption routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.api.dependencies.database import get_db
from quotaflow.api.dependencies.rate_limiting import rate_limit_ingress
from quotaflow.api.dependencies.services import get_quota_archive, get_quota_ledger
from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.quota_manager import QuotaLedger
from quotaflow.billing.schemas import (
    QuotaArchiveEntryResponse,
    QuotaCheckResult,
    UserUsageResponse,
)
from quotaflow.core.exceptions import QuotaExceededError

router = APIRouter(dependencies=[Depends(rate_limit_ingress)])


@router.get("/{user_id}", response_model=UserUsageResponse)
async def get_usage(
    user_id: str,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UserUsageResponse:
    """Usage of every feature on the user's current tier."""
    summary = await ledger.get_usage_summary(user_id)
    await db.commit()
    return summary


@router.get("/{user_id}/archive", response_model=list[QuotaArchiveEntryResponse])
async def get_archive(
    user_id: str,
    archive: Annotated[QuotaArchive, Depends(get_quota_archive)],
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[QuotaArchiveEntryResponse]:
    """Superseded quota records for a user, oldest first."""
    entries = await archive.list_entries(user_id, limit=limit, offset=offset)
    return [QuotaArchiveEntryResponse.model_validate(entry) for entry in entries]


@router.get("/{user_id}/{feature}", response_model=QuotaCheckResult)
async def check_quota(
    user_id: str,
    feature: str,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> QuotaCheckResult:
    """Check whether the user may use a feature once more.

    Raises:
        UserNotFoundError: If the user does not exist
        FeatureNotFoundError: If the user's tier lacks the feature
    """
    result = await ledger.check_quota(user_id, feature)
    # A first check creates the quota record
    await db.commit()
    return result


@router.post("/{user_id}/{feature}/increment", status_code=status.HTTP_204_NO_CONTENT)
async def increment_quota(
    user_id: str,
    feature: str,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Response:
    """Record one use of a feature without enforcing the limit.

    Raises:
        QuotaRecordNotFoundError: If the user has no quota record yet
        FeatureNotFoundError: If the record lacks the feature
    """
    await ledger.increment_quota(user_id, feature)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{user_id}/{feature}/consume", response_model=QuotaCheckResult)
async def consume_quota(
    user_id: str,
    feature: str,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> QuotaCheckResult:
    """Check and record one use in a single guarded write.

    Raises:
        QuotaExceededError: If the feature's quota is exhausted
    """
    result = await ledger.consume_quota(user_id, feature)
    await db.commit()
    if not result.allowed:
        raise QuotaExceededError(feature, result.count, result.limit)
    return result
