"""Per-transaction merge store for raw billing events."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.models import BillingEvent
from quotaflow.core.logging import LoggerMixin


class BillingEventLedger(LoggerMixin):
    """Upserts ``billing_history`` entries keyed by checkout/transaction id.

    Each entry keeps the last payload received for every event type, so a
    replayed or out-of-order delivery only ever overwrites its own slot.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.clock = clock

    async def get_entry(self, transaction_id: str) -> BillingEvent | None:
        return await self.db.get(BillingEvent, transaction_id)

    async def record_event(
        self,
        transaction_id: str,
        event_type: str,
        payload: dict[str, Any],
        status: str | None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ) -> BillingEvent:
        """Merge one event into the transaction's ledger entry.

        Args:
            transaction_id: Payment provider checkout/transaction id
            event_type: Event name, e.g. ``order.updated``
            payload: Raw event data, stored as received
            status: Status carried by the event
            created_at: Creation time from the payload, if any
            updated_at: Modification time from the payload, if any

        Returns:
            The upserted ledger entry
        """
        now = self.clock().isoformat()
        entry = await self.get_entry(transaction_id)

        if entry is None:
            entry = BillingEvent(
                checkout_id=transaction_id,
                created_at=created_at or now,
                updated_at=updated_at or now,
                events={},
            )
            self.db.add(entry)
        else:
            entry.created_at = created_at or entry.created_at or now
            entry.updated_at = updated_at or now

        entry.current_status = status
        entry.events = {**(entry.events or {}), event_type: payload}

        await self.db.flush()

        self.logger.info(
            "billing_event_recorded",
            checkout_id=transaction_id,
            event_type=event_type,
            status=status,
            event_types=sorted(entry.events),
        )
        return entry

    async def previous_status(
        self,
        transaction_id: str,
        event_type: str,
    ) -> str | None:
        """Status of the last stored payload of this type for the transaction."""
        entry = await self.get_entry(transaction_id)
        if entry is None:
            return None
        previous = (entry.events or {}).get(event_type)
        if not isinstance(previous, dict):
            return None
        status = previous.get("status")
        return str(status) if status is not None else None

    async def is_duplicate(
        self,
        transaction_id: str,
        event_type: str,
        status: str | None,
    ) -> bool:
        """Check whether an event repeats the last stored status for its type.

        Must be called before ``record_event`` for the same delivery.
        """
        if status is None:
            return False
        return await self.previous_status(transaction_id, event_type) == status
