"""
Event reducer: applies one processor event to the subscription row.

Every rule is keyed by the processor customer id carried on the event, never
by user id. Outcomes:

    success  the row was written
    noop     nothing to do (reason in data["reason"]):
               record_not_found  no row is linked to the customer
               stale_event       a newer event already updated the row
               manual_review     the event cannot be tied to a user safely
               missing_customer  the event object has no customer
               duplicate_update  this event already reached the row
               unrelated_invoice the invoice is not for the row's subscription

A no-op is not an error; the dispatcher acknowledges it without a retry.
Errors (storage outages, unknown prices) propagate to the dispatcher.
"""

import logging
from typing import Any, Optional

from .constants import (
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    STATUS_NOOP,
    STATUS_SUCCESS,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
)
from .errors import ConflictError, ValidationError
from .models import (
    PlanSnapshot,
    ReducerResult,
    SubscriptionRecord,
    UpdateOutcome,
    now_iso,
    timestamp_to_iso,
)
from .payment_gateway import PaymentGateway, first_price_id, period_bounds
from .subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

REASON_RECORD_NOT_FOUND = "record_not_found"
REASON_STALE_EVENT = "stale_event"
REASON_MANUAL_REVIEW = "manual_review"
REASON_MISSING_CUSTOMER = "missing_customer"
REASON_DUPLICATE_UPDATE = "duplicate_update"
REASON_UNRELATED_INVOICE = "unrelated_invoice"

# previous_attributes keys that mean the billing period may have moved
PERIOD_KEYS = ("status", "current_period_start", "current_period_end", "items")


def _id_of(value: Any) -> Optional[str]:
    """Processor references arrive as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _noop(action: str, reason: str, **data) -> ReducerResult:
    return ReducerResult(STATUS_NOOP, action, {"reason": reason, **data})


def _outcome_result(action: str, outcome: UpdateOutcome, customer_id: str, record=None, **data) -> ReducerResult:
    if outcome == UpdateOutcome.NOT_FOUND:
        logger.info(f"{action}: no subscription row for customer {customer_id}")
        return _noop(action, REASON_RECORD_NOT_FOUND, customer_id=customer_id)
    if outcome == UpdateOutcome.STALE:
        return _noop(action, REASON_STALE_EVENT, customer_id=customer_id)
    if outcome == UpdateOutcome.DUPLICATE:
        return _noop(action, REASON_DUPLICATE_UPDATE, customer_id=customer_id)
    if outcome == UpdateOutcome.SUBSCRIPTION_MISMATCH:
        return _noop(action, REASON_UNRELATED_INVOICE, customer_id=customer_id)
    return ReducerResult(STATUS_SUCCESS, action, {"user_id": record.user_id if record else None, **data})


def _invoice_period_end(invoice: dict) -> Optional[int]:
    """Period end of the subscription line, else the invoice's own period_end."""
    lines = (invoice.get("lines") or {}).get("data") or []
    subscription_lines = [
        line for line in lines
        if line.get("subscription") or line.get("type") == "subscription"
    ]
    for line in subscription_lines or lines:
        end = (line.get("period") or {}).get("end")
        if end:
            return end
    return invoice.get("period_end") or None


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    subscription = invoice.get("subscription")
    if not subscription:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    return _id_of(subscription)


class EventReducer:
    def __init__(self, store: SubscriptionStore, gateway: PaymentGateway):
        self.store = store
        self.gateway = gateway
        self._rules = {
            SUBSCRIPTION_CREATED: self._subscription_created,
            SUBSCRIPTION_UPDATED: self._subscription_updated,
            SUBSCRIPTION_DELETED: self._subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._invoice_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
        }

    def apply(
        self,
        event_type: str,
        event_object: dict,
        previous_attributes: Optional[dict] = None,
        event_created: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> ReducerResult:
        """
        Apply one event.

        Args:
            event_type: Processor event type
            event_object: The event's data.object
            previous_attributes: The event's data.previous_attributes (updates only)
            event_created: Signed `created` of the event; orders concurrent updates
            event_id: Id of the event; a row it already reached is not updated again

        Raises:
            ValidationError: event_type has no rule
        """
        rule = self._rules.get(event_type)
        if rule is None:
            raise ValidationError(f"Unsupported event type: {event_type}")

        customer_id = _id_of(event_object.get("customer"))
        if not customer_id:
            logger.warning(f"{event_type} event object {event_object.get('id')} has no customer")
            return _noop(event_type, REASON_MISSING_CUSTOMER)

        return rule(customer_id, event_object, previous_attributes or {}, event_created, event_id)

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def _resolve_plan(self, subscription: dict) -> tuple[Optional[str], Optional[PlanSnapshot]]:
        price_id = first_price_id(subscription)
        if not price_id:
            return None, None
        return price_id, self.gateway.retrieve_plan_snapshot(price_id)

    def _subscription_created(self, customer_id, subscription, previous_attributes, event_created, event_id):
        action = "subscription_created"
        is_active = subscription.get("status") == "active"
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        start, end = period_bounds(subscription)
        price_id, plan_snapshot = self._resolve_plan(subscription)

        changes = {
            "subscription_id": subscription.get("id"),
            "price_id": price_id,
            "plan_snapshot": plan_snapshot.to_item() if plan_snapshot else None,
            "is_active": is_active,
            "cancel_at_period_end": cancel_at_period_end,
            "start_date": timestamp_to_iso(start),
            "end_date": timestamp_to_iso(end),
            "next_payment_date": timestamp_to_iso(end) if is_active and not cancel_at_period_end else None,
        }

        outcome, record = self.store.update_by_customer_id(customer_id, changes, event_created, event_id)
        if outcome != UpdateOutcome.NOT_FOUND:
            return _outcome_result(action, outcome, customer_id, record, is_active=is_active)

        user_id = (subscription.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.warning(
                f"Subscription {subscription.get('id')} for unknown customer {customer_id} "
                f"carries no user_id; flagging for manual review"
            )
            return _noop(action, REASON_MANUAL_REVIEW, customer_id=customer_id)

        existing = self.store.get_by_user_id(user_id)
        try:
            if existing is None:
                self.store.insert(SubscriptionRecord(
                    user_id=user_id,
                    customer_id=customer_id,
                    subscription_id=changes["subscription_id"],
                    price_id=price_id,
                    plan_snapshot=plan_snapshot,
                    is_active=is_active,
                    cancel_at_period_end=cancel_at_period_end,
                    start_date=changes["start_date"],
                    end_date=changes["end_date"],
                    next_payment_date=changes["next_payment_date"],
                    last_event_at=int(event_created) if event_created else None,
                    last_event_id=event_id,
                ))
                logger.info(f"Inserted subscription row for user {user_id} from {SUBSCRIPTION_CREATED}")
            elif not existing.customer_id:
                if event_created:
                    changes["last_event_at"] = int(event_created)
                if event_id:
                    changes["last_event_id"] = event_id
                self.store.link_customer(user_id, customer_id, changes)
            else:
                logger.warning(
                    f"User {user_id} already has customer {existing.customer_id}, "
                    f"not linking {customer_id}; flagging for manual review"
                )
                return _noop(action, REASON_MANUAL_REVIEW, customer_id=customer_id, user_id=user_id)
        except ConflictError:
            current = self.store.get_by_user_id(user_id)
            if event_id and current is not None and current.last_event_id == event_id:
                logger.info(f"Concurrent delivery of {event_id} already created the row for user {user_id}")
                return _noop(action, REASON_DUPLICATE_UPDATE, customer_id=customer_id, user_id=user_id)
            raise

        return ReducerResult(STATUS_SUCCESS, action, {"user_id": user_id, "is_active": is_active})

    def _subscription_updated(self, customer_id, subscription, previous_attributes, event_created, event_id):
        status = subscription.get("status")
        is_active = status == "active"
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        start, end = period_bounds(subscription)

        changes = {
            "subscription_id": subscription.get("id"),
            "is_active": is_active,
            "cancel_at_period_end": cancel_at_period_end,
        }
        if "items" in previous_attributes:
            price_id, plan_snapshot = self._resolve_plan(subscription)
            if plan_snapshot:
                changes["price_id"] = price_id
                changes["plan_snapshot"] = plan_snapshot.to_item()

        if is_active or any(key in previous_attributes for key in PERIOD_KEYS):
            if start:
                changes["start_date"] = timestamp_to_iso(start)
            if end:
                changes["end_date"] = timestamp_to_iso(end)

        if is_active and not cancel_at_period_end:
            if end:
                changes["next_payment_date"] = timestamp_to_iso(end)
        else:
            changes["next_payment_date"] = None

        outcome, record = self.store.update_by_customer_id(customer_id, changes, event_created, event_id)
        return _outcome_result(
            "subscription_updated",
            outcome,
            customer_id,
            record,
            status=status,
            cancel_at_period_end=cancel_at_period_end,
        )

    def _subscription_deleted(self, customer_id, subscription, previous_attributes, event_created, event_id):
        changes = {
            "is_active": False,
            "cancel_at_period_end": False,
            "end_date": timestamp_to_iso(subscription.get("canceled_at")) or now_iso(),
            "next_payment_date": None,
        }
        outcome, record = self.store.update_by_customer_id(customer_id, changes, event_created, event_id)
        return _outcome_result("subscription_deleted", outcome, customer_id, record, end_date=changes["end_date"])

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def _invoice_payment_succeeded(self, customer_id, invoice, previous_attributes, event_created, event_id):
        action = "payment_succeeded"
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            # One-off invoice: paying it says nothing about the subscription
            logger.info(f"Invoice {invoice.get('id')} for customer {customer_id} has no subscription")
            return _noop(action, REASON_UNRELATED_INVOICE, customer_id=customer_id)

        changes = {"is_active": True}
        next_payment_date = timestamp_to_iso(_invoice_period_end(invoice))
        if next_payment_date:
            changes["next_payment_date"] = next_payment_date

        outcome, record = self.store.update_by_customer_id(
            customer_id, changes, event_created, event_id, subscription_id=subscription_id
        )
        return _outcome_result(
            action,
            outcome,
            customer_id,
            record,
            subscription_id=subscription_id,
            next_payment_date=next_payment_date,
        )

    def _invoice_payment_failed(self, customer_id, invoice, previous_attributes, event_created, event_id):
        # The processor retries on its own schedule; a final failure arrives as subscription deleted
        action = "payment_failed"
        record = self.store.get_by_customer_id(customer_id)
        if record is None:
            return _noop(action, REASON_RECORD_NOT_FOUND, customer_id=customer_id)

        attempt_count = invoice.get("attempt_count")
        next_payment_attempt = timestamp_to_iso(invoice.get("next_payment_attempt"))
        logger.warning(
            f"Payment failed for user {record.user_id} (customer {customer_id}), "
            f"attempt {attempt_count}, next attempt {next_payment_attempt}",
            extra={"invoice_id": invoice.get("id"), "attempt_count": attempt_count},
        )
        return ReducerResult(STATUS_NOOP, action, {
            "user_id": record.user_id,
            "attempt_count": attempt_count,
            "next_payment_attempt": next_payment_attempt,
        })
