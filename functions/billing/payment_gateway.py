"""
Payment Service client (Stripe).

One capability interface, one implementation. Stripe SDK errors are
translated here so the core only ever sees the billing error taxonomy:

    APIConnectionError, RateLimitError, APIError -> PaymentServiceError (retryable)
    AuthenticationError, PermissionError         -> PaymentConfigurationError
    InvalidRequestError on a price               -> PlanResolutionError
    SignatureVerificationError                   -> SignatureError
    any other StripeError                        -> PaymentRejectedError
"""

import json
import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol

import stripe

from .constants import BILLING_HISTORY_LIMIT, OPEN_SESSION_LOOKUP_LIMIT, PRODUCT_LIST_LIMIT
from .errors import (
    PaymentConfigurationError,
    PaymentRejectedError,
    PaymentServiceError,
    PlanResolutionError,
    SignatureError,
    ValidationError,
)
from .logging_utils import log_external_call
from .models import CheckoutRequest, CheckoutSession, PlanSnapshot, UserIdentity, timestamp_to_iso

logger = logging.getLogger(__name__)

# Seconds a signed webhook timestamp may differ from now
SIGNATURE_TOLERANCE = 300

DEFAULT_PLAN_NAME = "Subscription"


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a plain dict or a Stripe object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(name, default)
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def _data(list_object: Any) -> list:
    return list(_field(list_object, "data", []) or [])


def period_bounds(subscription: Any) -> tuple[Optional[int], Optional[int]]:
    """
    Current period (start, end) of a subscription as epoch seconds.

    Newer API versions moved the period from the subscription to its items,
    so the first item is used when the subscription itself has none.
    """
    start = _field(subscription, "current_period_start")
    end = _field(subscription, "current_period_end")
    if start and end:
        return start, end
    items = _data(_field(subscription, "items"))
    if items:
        start = start or _field(items[0], "current_period_start")
        end = end or _field(items[0], "current_period_end")
    return start or None, end or None


def first_price_id(subscription: Any) -> Optional[str]:
    items = _data(_field(subscription, "items"))
    if not items:
        return None
    return _field(_field(items[0], "price"), "id")


def clean_plan_description(description: Optional[str]) -> str:
    """Reduce an invoice line description ("1 × Pro (at $10.00 / month)") to a plan name."""
    if not description:
        return DEFAULT_PLAN_NAME
    name = re.sub(r"^\d+\s*×\s*", "", description)
    name = re.sub(r"\s*\(at\s*\$?[\d.,]+\s*/\s*\w+\)", "", name)
    name = re.sub(r"\s*/\s*(month|year|week|day)", "", name)
    name = re.sub(r"\s*per\s*(month|year|week|day)", "", name)
    return name.strip() or DEFAULT_PLAN_NAME


class PaymentGateway(Protocol):
    """Capabilities consumed from the payment processor."""

    def create_customer(self, user: UserIdentity) -> str: ...

    def delete_customer(self, customer_id: str) -> None: ...

    def retrieve_plan_snapshot(self, price_id: str) -> PlanSnapshot: ...

    def create_checkout_session(
        self, request: CheckoutRequest, customer_id: str, metadata: dict
    ) -> CheckoutSession: ...

    def list_open_checkout_sessions(self, customer_id: str) -> list[CheckoutSession]: ...

    def expire_checkout_session(self, session_id: str) -> None: ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession: ...

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> dict: ...

    def cancel_at_period_end(self, subscription_id: str) -> dict: ...

    def get_payment_method(self, subscription_id: str) -> dict: ...

    def list_paid_invoices(self, customer_id: str) -> list[dict]: ...

    def list_products(self) -> list[dict]: ...


def _to_session(session: Any) -> CheckoutSession:
    price_ids = [
        _field(_field(line, "price"), "id")
        for line in _data(_field(session, "line_items"))
    ]
    return CheckoutSession(
        id=_field(session, "id"),
        url=_field(session, "url"),
        status=_field(session, "status"),
        payment_status=_field(session, "payment_status"),
        customer_email=_field(_field(session, "customer_details"), "email") or _field(session, "customer_email"),
        price_ids=[price_id for price_id in price_ids if price_id],
        metadata=dict(_field(session, "metadata", {}) or {}),
    )


def _to_price(price: Any) -> dict:
    recurring = _field(price, "recurring")
    return {
        "id": _field(price, "id"),
        "amount": _field(price, "unit_amount"),
        "currency": _field(price, "currency"),
        "interval": _field(recurring, "interval"),
        "interval_count": _field(recurring, "interval_count"),
        "trial_period_days": _field(recurring, "trial_period_days"),
    }


class StripePaymentGateway:
    """Stripe implementation of PaymentGateway."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    @contextmanager
    def _call(self, operation: str) -> Iterator[None]:
        start = time.time()
        try:
            yield
        except stripe.SignatureVerificationError:
            raise
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, str(e))
            raise PaymentServiceError(f"Payment service unavailable during {operation}") from e
        except (stripe.AuthenticationError, stripe.PermissionError) as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, str(e))
            raise PaymentConfigurationError(f"Payment service refused credentials during {operation}") from e
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, str(e))
            raise PaymentRejectedError(
                f"Payment service rejected {operation}",
                details={"stripe_code": getattr(e, "code", None)},
            ) from e
        else:
            log_external_call(logger, "stripe", operation, True, (time.time() - start) * 1000)

    # ------------------------------------------------------------------
    # Customers and plans
    # ------------------------------------------------------------------

    def create_customer(self, user: UserIdentity) -> str:
        with self._call("customers.create"):
            customer = stripe.Customer.create(
                email=user.email,
                name=user.display_name,
                metadata={"user_id": user.user_id},
                api_key=self.api_key,
            )
        customer_id = _field(customer, "id")
        logger.info(f"Created Stripe customer {customer_id} for user {user.user_id}")
        return customer_id

    def delete_customer(self, customer_id: str) -> None:
        with self._call("customers.delete"):
            stripe.Customer.delete(customer_id, api_key=self.api_key)
        logger.info(f"Deleted Stripe customer {customer_id}")

    def retrieve_plan_snapshot(self, price_id: str) -> PlanSnapshot:
        try:
            with self._call("prices.retrieve"):
                price = stripe.Price.retrieve(price_id, expand=["product"], api_key=self.api_key)
        except PaymentRejectedError as e:
            if isinstance(e.__cause__, stripe.InvalidRequestError):
                raise PlanResolutionError(price_id) from e
            raise

        recurring = _field(price, "recurring")
        product = _field(price, "product")
        if isinstance(product, str):
            product_id, product_name = product, None
        else:
            product_id, product_name = _field(product, "id"), _field(product, "name")

        return PlanSnapshot(
            price_id=_field(price, "id") or price_id,
            amount=_field(price, "unit_amount"),
            currency=_field(price, "currency"),
            interval=_field(recurring, "interval"),
            interval_count=_field(recurring, "interval_count"),
            product_id=product_id,
            product_name=product_name,
        )

    # ------------------------------------------------------------------
    # Checkout sessions
    # ------------------------------------------------------------------

    def create_checkout_session(
        self, request: CheckoutRequest, customer_id: str, metadata: dict
    ) -> CheckoutSession:
        with self._call("checkout.sessions.create"):
            session = stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": request.price_id, "quantity": request.quantity}],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                customer=customer_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                api_key=self.api_key,
            )
        return _to_session(session)

    def list_open_checkout_sessions(self, customer_id: str) -> list[CheckoutSession]:
        with self._call("checkout.sessions.list"):
            sessions = stripe.checkout.Session.list(
                customer=customer_id,
                status="open",
                limit=OPEN_SESSION_LOOKUP_LIMIT,
                expand=["data.line_items"],
                api_key=self.api_key,
            )
        return [
            session
            for session in (_to_session(item) for item in _data(sessions))
            if session.status == "open"
        ]

    def expire_checkout_session(self, session_id: str) -> None:
        with self._call("checkout.sessions.expire"):
            stripe.checkout.Session.expire(session_id, api_key=self.api_key)
        logger.info(f"Expired checkout session {session_id}")

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        with self._call("checkout.sessions.retrieve"):
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        return _to_session(session)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> dict:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, SIGNATURE_TOLERANCE)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureError("Invalid webhook signature") from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValidationError("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")
        return event

    # ------------------------------------------------------------------
    # Subscriptions, invoices, catalog
    # ------------------------------------------------------------------

    def cancel_at_period_end(self, subscription_id: str) -> dict:
        with self._call("subscriptions.update"):
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                api_key=self.api_key,
            )
        _, period_end = period_bounds(subscription)
        return {
            "subscription_id": _field(subscription, "id") or subscription_id,
            "cancel_at_period_end": bool(_field(subscription, "cancel_at_period_end", True)),
            "current_period_end": timestamp_to_iso(period_end),
        }

    def get_payment_method(self, subscription_id: str) -> dict:
        """Card details for a subscription: subscription default, then customer default, then latest invoice."""
        with self._call("payment_methods.lookup"):
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
            payment_method_id = _field(subscription, "default_payment_method")
            customer_id = _field(subscription, "customer")

            if not payment_method_id and customer_id:
                customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
                payment_method_id = _field(_field(customer, "invoice_settings"), "default_payment_method")

            if not payment_method_id:
                invoices = stripe.Invoice.list(
                    subscription=subscription_id,
                    limit=1,
                    expand=["data.payment_intent"],
                    api_key=self.api_key,
                )
                latest = _data(invoices)
                if latest:
                    payment_method_id = _field(_field(latest[0], "payment_intent"), "payment_method")

            if not payment_method_id:
                return {"error": "No payment method found"}

            if not isinstance(payment_method_id, str):
                payment_method_id = _field(payment_method_id, "id")
            payment_method = stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)

        result = {"id": _field(payment_method, "id"), "type": _field(payment_method, "type")}
        if result["type"] == "card":
            card = _field(payment_method, "card")
            result["card"] = {
                "brand": _field(card, "brand"),
                "last4": _field(card, "last4"),
                "exp_month": _field(card, "exp_month"),
                "exp_year": _field(card, "exp_year"),
            }
        return result

    def list_paid_invoices(self, customer_id: str) -> list[dict]:
        with self._call("invoices.list"):
            invoices = stripe.Invoice.list(
                customer=customer_id,
                status="paid",
                limit=BILLING_HISTORY_LIMIT,
                api_key=self.api_key,
            )

        history = []
        for invoice in _data(invoices):
            lines = _data(_field(invoice, "lines"))
            paid_at = _field(_field(invoice, "status_transitions"), "paid_at")
            history.append({
                "invoice_id": _field(invoice, "id"),
                "plan_name": clean_plan_description(_field(lines[0], "description") if lines else None),
                "amount_paid": (_field(invoice, "total", 0) or 0) / 100,
                "currency": _field(invoice, "currency"),
                "period_start": timestamp_to_iso(_field(invoice, "period_start")),
                "period_end": timestamp_to_iso(_field(invoice, "period_end")),
                "status": _field(invoice, "status"),
                "paid_at": timestamp_to_iso(paid_at),
            })
        return history

    def list_products(self) -> list[dict]:
        with self._call("products.list"):
            products = stripe.Product.list(active=True, limit=PRODUCT_LIST_LIMIT, api_key=self.api_key)
            catalog = []
            for product in _data(products):
                prices = stripe.Price.list(product=_field(product, "id"), active=True, api_key=self.api_key)
                catalog.append({
                    "id": _field(product, "id"),
                    "name": _field(product, "name"),
                    "description": _field(product, "description"),
                    "prices": [_to_price(price) for price in _data(prices)],
                })
        return catalog
