"""
Webhook dispatcher for payment processor events.

verify signature -> validate -> filter type -> ledger duplicate check ->
reduce -> record in ledger

Delivery is at-least-once; the ledger makes application exactly-once.
Retryable failures (storage or processor unavailable) answer 500 and are
not recorded, so the processor redelivers. Every other failure is recorded
as "failed" and acknowledged with 200 to stop the redelivery loop.
"""

import logging
import time
from typing import Callable, Optional

from . import config
from .constants import RELEVANT_EVENT_TYPES, STATUS_NOOP
from .errors import SignatureError, ValidationError, is_retryable
from .event_ledger import EventLedger
from .logging_utils import bind_event_id
from .metrics import emit_webhook_metric
from .models import HttpResult
from .payment_gateway import PaymentGateway
from .reducer import EventReducer

logger = logging.getLogger(__name__)

FAILED_STATUS = "failed"


def is_relevant_event(event_type: Optional[str]) -> bool:
    return event_type in RELEVANT_EVENT_TYPES


def validate_event(event: dict, max_age_seconds: int, now: Optional[float] = None) -> list[str]:
    """
    Structural and staleness checks on a verified event.

    Returns:
        List of problems; empty when the event is usable
    """
    errors = []
    if not isinstance(event.get("id"), str) or not event.get("id"):
        errors.append("Event id is required")
    if not isinstance(event.get("type"), str) or not event.get("type"):
        errors.append("Event type is required")

    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        errors.append("Event data.object is required")

    created = event.get("created")
    if isinstance(created, bool) or not isinstance(created, int) or created <= 0:
        errors.append("Event created timestamp is required")
    else:
        age = (now if now is not None else time.time()) - created
        if age > max_age_seconds:
            errors.append(f"Event is older than {max_age_seconds} seconds")

    return errors


def _customer_id(event_object: dict) -> Optional[str]:
    customer = event_object.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer or None


class WebhookDispatcher:
    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: EventLedger,
        reducer: EventReducer,
        webhook_secret_provider: Callable[[], Optional[str]],
        max_event_age: Optional[int] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.reducer = reducer
        self.webhook_secret_provider = webhook_secret_provider
        self.max_event_age = max_event_age or config.WEBHOOK_MAX_EVENT_AGE_SECONDS

    def handle(self, raw_body: str, signature: Optional[str]) -> HttpResult:
        if not signature:
            logger.warning("Webhook delivery without Stripe-Signature header")
            emit_webhook_metric("unknown", "invalid")
            return HttpResult(400, "Missing Stripe signature")

        secret = self.webhook_secret_provider()
        if not secret:
            logger.error("Stripe webhook secret not configured")
            return HttpResult(500, "Webhook secret not configured")

        try:
            event = self.gateway.verify_webhook_signature(raw_body, signature, secret)
        except SignatureError:
            emit_webhook_metric("unknown", "invalid")
            return HttpResult(400, "Invalid webhook signature")
        except ValidationError as e:
            emit_webhook_metric("unknown", "invalid")
            return HttpResult(400, "Invalid webhook event", {"errors": e.errors})

        errors = validate_event(event, self.max_event_age)
        if errors:
            logger.warning(f"Rejected webhook event {event.get('id')}: {errors}")
            emit_webhook_metric(event.get("type"), "invalid")
            return HttpResult(400, "Invalid webhook event", {"errors": errors})

        event_id = event["id"]
        event_type = event["type"]
        bind_event_id(event_id)

        if not is_relevant_event(event_type):
            logger.info(f"Ignoring webhook event type {event_type}")
            emit_webhook_metric(event_type, "ignored")
            return HttpResult(200, "Event ignored", {"event_id": event_id, "event_type": event_type})

        return self._process(event)

    def _process(self, event: dict) -> HttpResult:
        event_id = event["id"]
        event_type = event["type"]
        data = event["data"]
        customer_id = _customer_id(data["object"])

        try:
            if self.ledger.is_processed(event_id):
                emit_webhook_metric(event_type, "duplicate")
                return HttpResult(200, "Event already processed", {"event_id": event_id, "duplicate": True})

            result = self.reducer.apply(
                event_type,
                data["object"],
                previous_attributes=data.get("previous_attributes"),
                event_created=event.get("created"),
                event_id=event_id,
            )
            self.ledger.record(
                event_id,
                event_type,
                result.status,
                customer_id=customer_id,
                event_created=event.get("created"),
            )
        except Exception as e:
            if is_retryable(e):
                logger.error(f"Retryable failure processing {event_type} event {event_id}: {e}")
                emit_webhook_metric(event_type, "retry")
                return HttpResult(500, "Webhook processing failed, will retry", {"event_id": event_id})
            return self._acknowledge_failure(event, customer_id, e)

        logger.info(
            f"Processed {event_type} event {event_id}: {result.status}",
            extra={"action": result.action, "result_status": result.status},
        )
        emit_webhook_metric(event_type, "noop" if result.status == STATUS_NOOP else "processed")
        return HttpResult(200, "Webhook processed successfully", {
            "event_id": event_id,
            "event_type": event_type,
            "result": result.to_dict(),
        })

    def _acknowledge_failure(self, event: dict, customer_id: Optional[str], error: Exception) -> HttpResult:
        event_id = event["id"]
        event_type = event["type"]
        logger.error(f"Non-retryable failure processing {event_type} event {event_id}: {error}", exc_info=True)
        try:
            self.ledger.record(
                event_id,
                event_type,
                FAILED_STATUS,
                error=str(error),
                customer_id=customer_id,
                event_created=event.get("created"),
            )
        except Exception as e:
            if not is_retryable(e):
                raise
            logger.error(f"Could not record failed event {event_id}: {e}")
            emit_webhook_metric(event_type, "retry")
            return HttpResult(500, "Webhook processing failed, will retry", {"event_id": event_id})

        emit_webhook_metric(event_type, "failed")
        return HttpResult(200, "Webhook handled with error", {"event_id": event_id, "error": str(error)})
