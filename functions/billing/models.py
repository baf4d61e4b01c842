"""
Billing data model.

Dataclasses for the subscription row, the plan snapshot cached on it, and the
small value objects passed between the handlers and the core services.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import ValidationError


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_to_iso(value: Any) -> Optional[str]:
    """Convert epoch seconds to an ISO-8601 UTC string.

    Missing, zero, negative or unparsable values mean "unknown" and map to
    None, never to 1970-01-01.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _int_or_none(value: Any) -> Optional[int]:
    return None if value is None else int(value)


class UpdateOutcome(Enum):
    """Result of a conditional row update."""

    UPDATED = "updated"
    NOT_FOUND = "not_found"
    STALE = "stale"
    DUPLICATE = "duplicate"
    SUBSCRIPTION_MISMATCH = "subscription_mismatch"


@dataclass
class PlanSnapshot:
    """Denormalized copy of a price's billing attributes at last sync."""

    price_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: Optional[int] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None

    def to_item(self) -> dict:
        return asdict(self)

    @classmethod
    def from_item(cls, item: Optional[dict]) -> Optional["PlanSnapshot"]:
        if not item:
            return None
        return cls(
            price_id=item.get("price_id"),
            amount=_int_or_none(item.get("amount")),
            currency=item.get("currency"),
            interval=item.get("interval"),
            interval_count=_int_or_none(item.get("interval_count")),
            product_id=item.get("product_id"),
            product_name=item.get("product_name"),
        )


@dataclass
class SubscriptionRecord:
    """One subscription row per user."""

    user_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    plan_snapshot: Optional[PlanSnapshot] = None
    is_active: bool = False
    cancel_at_period_end: bool = False
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    next_payment_date: Optional[str] = None
    modified_at: Optional[str] = None
    last_event_at: Optional[int] = None
    last_event_id: Optional[str] = None

    def to_item(self) -> dict:
        item = asdict(self)
        item["plan_snapshot"] = self.plan_snapshot.to_item() if self.plan_snapshot else None
        return item

    @classmethod
    def from_item(cls, item: dict) -> "SubscriptionRecord":
        return cls(
            user_id=item["user_id"],
            customer_id=item.get("customer_id"),
            subscription_id=item.get("subscription_id"),
            price_id=item.get("price_id"),
            plan_snapshot=PlanSnapshot.from_item(item.get("plan_snapshot")),
            is_active=bool(item.get("is_active", False)),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
            start_date=item.get("start_date"),
            end_date=item.get("end_date"),
            next_payment_date=item.get("next_payment_date"),
            modified_at=item.get("modified_at"),
            last_event_at=_int_or_none(item.get("last_event_at")),
            last_event_id=item.get("last_event_id"),
        )


@dataclass
class ProcessedEvent:
    """Ledger entry for a handled webhook event."""

    event_id: str
    event_type: str
    processed_at: str
    status: str
    error: Optional[str] = None
    customer_id: Optional[str] = None
    event_created_at: Optional[int] = None

    def to_item(self) -> dict:
        item = asdict(self)
        item["pk"] = item.pop("event_id")
        return item


@dataclass
class UserIdentity:
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.full_name or self.email


@dataclass
class CheckoutRequest:
    """Validated body of POST /checkout."""

    price_id: str
    success_url: str
    cancel_url: str
    quantity: int = 1
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict) -> "CheckoutRequest":
        errors = []
        price_id = body.get("price_id")
        success_url = body.get("success_url")
        cancel_url = body.get("cancel_url")
        quantity = body.get("quantity")
        metadata = body.get("metadata")

        if not price_id or not isinstance(price_id, str):
            errors.append("price_id is required")
        if not success_url or not isinstance(success_url, str):
            errors.append("success_url is required")
        if not cancel_url or not isinstance(cancel_url, str):
            errors.append("cancel_url is required")
        if quantity is None:
            quantity = 1
        elif isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            errors.append("quantity must be a positive integer")
        if metadata is None:
            metadata = {}
        elif not isinstance(metadata, dict):
            errors.append("metadata must be an object")

        if errors:
            raise ValidationError("Invalid checkout request", errors=errors)

        return cls(
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            quantity=quantity,
            metadata={str(k): str(v) for k, v in metadata.items()},
        )


@dataclass
class CheckoutSession:
    """The processor's checkout session, reduced to what the saga needs."""

    id: str
    url: Optional[str]
    status: Optional[str]
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    price_ids: list = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def references_price(self, price_id: str) -> bool:
        return price_id in self.price_ids or self.metadata.get("price_id") == price_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "payment_status": self.payment_status,
            "customer_email": self.customer_email,
            "url": self.url,
        }


@dataclass
class CheckoutResult:
    session_id: str
    checkout_url: Optional[str]
    status: Optional[str]
    customer_id: str
    action: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReducerResult:
    """Outcome of applying one processor event to the subscription row."""

    status: str
    action: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HttpResult:
    """(statusCode, message, data) triple handed to the HTTP layer."""

    status_code: int
    message: str
    data: Optional[Any] = None
