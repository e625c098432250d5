"""Decoding of payment-provider webhook bodies into typed events.

Webhook bodies are arbitrary JSON. ``decode_webhook`` inspects them once, at the
boundary, and returns one variant of a closed set; everything downstream works
with typed fields only. Bodies with an unknown ``type`` or a non-object
``data`` become ``UnrecognizedEvent``.
"""

import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from quotaflow.billing.intervals import ensure_utc


class EventType(str, enum.Enum):
    """Event names recorded in the billing ledger."""

    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_UNCANCELED = "subscription.uncanceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"


class OrderStatus(str, enum.Enum):
    """Order statuses the reconciler knows how to act on."""

    PENDING = "pending"
    PAID = "paid"
    ACTIVE = "active"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELED = "canceled"


PAID_ORDER_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.ACTIVE, OrderStatus.COMPLETED}
)
REVOKING_ORDER_STATUSES = frozenset(
    {OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.CANCELED}
)


class IdentityKeys(BaseModel):
    """Correlation keys carried by an event, in resolution order."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    email: str | None = None
    customer_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.user_id or self.email or self.customer_id)


class _BillingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: dict[str, Any] = Field(default_factory=dict)
    transaction_id: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    identity: IdentityKeys = Field(default_factory=IdentityKeys)


class OrderUpdated(_BillingEvent):
    event_type: Literal["order.updated"] = "order.updated"
    product_id: str | None = None


class SubscriptionCanceled(_BillingEvent):
    event_type: Literal["subscription.canceled"] = "subscription.canceled"
    canceled_at: datetime | None = None
    current_period_end: datetime | None = None


class SubscriptionUncanceled(_BillingEvent):
    event_type: Literal["subscription.uncanceled"] = "subscription.uncanceled"


class SubscriptionRevoked(_BillingEvent):
    event_type: Literal["subscription.revoked"] = "subscription.revoked"


class LedgerOnlyEvent(_BillingEvent):
    """Recognized event that is recorded but drives no transition."""

    event_type: Literal["order.created", "subscription.created", "subscription.updated"]


class UnrecognizedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str | None = None
    reason: str


BillingWebhookEvent = (
    OrderUpdated
    | SubscriptionCanceled
    | SubscriptionUncanceled
    | SubscriptionRevoked
    | LedgerOnlyEvent
)


def _as_str(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str | datetime):
        return None
    try:
        return ensure_utc(value)
    except ValueError:
        return None


def extract_identity(data: dict[str, Any]) -> IdentityKeys:
    """Pull the three correlation keys out of an event payload.

    The internal user id comes from ``metadata.user_id``; subscription payloads
    carry it as the customer's ``external_id`` instead.
    """
    metadata = _as_dict(data.get("metadata"))
    customer = _as_dict(data.get("customer"))
    user_id = (
        _as_str(metadata.get("user_id"))
        or _as_str(customer.get("external_id"))
        or _as_str(data.get("external_id"))
    )
    customer_id = _as_str(data.get("customer_id")) or _as_str(customer.get("id"))
    return IdentityKeys(
        user_id=user_id,
        email=_as_str(customer.get("email")),
        customer_id=customer_id,
    )


def decode_webhook(body: Any) -> BillingWebhookEvent | UnrecognizedEvent:
    """Classify a parsed webhook body.

    Args:
        body: JSON-decoded request body of any shape

    Returns:
        A typed event, or ``UnrecognizedEvent`` describing why it is not one
    """
    if not isinstance(body, dict):
        return UnrecognizedEvent(reason="body is not a JSON object")

    event_type = _as_str(body.get("type"))
    if event_type is None:
        return UnrecognizedEvent(reason="missing event type")

    try:
        kind = EventType(event_type)
    except ValueError:
        return UnrecognizedEvent(event_type=event_type, reason="unsupported event type")

    data = body.get("data")
    if not isinstance(data, dict):
        return UnrecognizedEvent(event_type=event_type, reason="data is not a JSON object")

    common: dict[str, Any] = {
        "data": data,
        "transaction_id": _as_str(data.get("checkout_id")) or _as_str(data.get("id")),
        "status": _as_str(data.get("status")),
        "created_at": _as_str(data.get("created_at")),
        "updated_at": _as_str(data.get("modified_at")) or _as_str(data.get("updated_at")),
        "identity": extract_identity(data),
    }

    if kind is EventType.ORDER_UPDATED:
        product = _as_dict(data.get("product"))
        return OrderUpdated(
            product_id=_as_str(data.get("product_id")) or _as_str(product.get("id")),
            **common,
        )
    if kind is EventType.SUBSCRIPTION_CANCELED:
        return SubscriptionCanceled(
            canceled_at=_as_datetime(data.get("canceled_at")),
            current_period_end=_as_datetime(data.get("current_period_end")),
            **common,
        )
    if kind is EventType.SUBSCRIPTION_UNCANCELED:
        return SubscriptionUncanceled(**common)
    if kind is EventType.SUBSCRIPTION_REVOKED:
        return SubscriptionRevoked(**common)
    return LedgerOnlyEvent(event_type=kind.value, **common)
