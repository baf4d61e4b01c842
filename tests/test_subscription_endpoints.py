"""
Tests for the subscription query handlers and service.

GET /subscription/{userId}, DELETE /subscription/{userId},
GET /subscription/{userId}/billing-history.
"""

import json
from unittest.mock import MagicMock

import pytest

from billing.errors import ForbiddenError, NotFoundError, StorageError, ValidationError
from billing.models import PlanSnapshot, SubscriptionRecord
from billing.subscriptions import SubscriptionQueryService, ensure_own_account

PLAN = PlanSnapshot("price_123", 1000, "usd", "month", 1, "prod_basic", "Basic")


@pytest.fixture
def active_record(store):
    record = SubscriptionRecord(
        user_id="u1",
        customer_id="cus_1",
        subscription_id="sub_1",
        is_active=True,
        price_id="price_123",
        plan_snapshot=PLAN,
        start_date="2026-10-01T00:00:00+00:00",
        next_payment_date="2026-11-01T00:00:00+00:00",
    )
    store.insert(record)
    return record


@pytest.fixture
def user_event(api_gateway_event):
    def _event(method="GET", user_id="u1", token="Bearer valid-token"):
        api_gateway_event["httpMethod"] = method
        api_gateway_event["pathParameters"] = {"userId": user_id} if user_id else {}
        if token:
            api_gateway_event["headers"]["Authorization"] = token
        return api_gateway_event

    return _event


@pytest.fixture
def service(store, gateway):
    return SubscriptionQueryService(store, gateway)


class TestEnsureOwnAccount:
    def test_same_user_passes(self, test_user):
        ensure_own_account(test_user, "u1")

    def test_other_user_is_forbidden(self, test_user):
        with pytest.raises(ForbiddenError) as exc_info:
            ensure_own_account(test_user, "u2")

        assert exc_info.value.status_code == 403


class TestSubscriptionQueryService:
    def test_get_subscription_shape(self, service, gateway, active_record):
        gateway.payment_methods["sub_1"] = {
            "id": "pm_1",
            "type": "card",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        }

        result = service.get_subscription("u1")

        assert result["subscription_id"] == "sub_1"
        assert result["subscription_name"] == "Basic"
        assert result["product_id"] == "prod_basic"
        assert result["price"] == {"price_id": "price_123", "amount": 10.0, "currency": "usd", "interval": "month"}
        assert result["is_active"] is True
        assert result["end_date"] is None
        assert result["payment_method"]["card"]["last4"] == "4242"

    def test_get_subscription_without_row(self, service):
        with pytest.raises(NotFoundError):
            service.get_subscription("u1")

    def test_payment_method_failure_is_reported_inline(self, service, gateway, active_record):
        from billing.errors import PaymentServiceError

        gateway.fail_on["get_payment_method"] = PaymentServiceError("Payment service unavailable")

        result = service.get_subscription("u1")

        assert result["payment_method"] == {"error": "Payment service unavailable"}

    def test_row_without_subscription_skips_payment_method(self, service, gateway, store):
        store.insert(SubscriptionRecord(user_id="u1", customer_id="cus_1"))

        result = service.get_subscription("u1")

        assert result["payment_method"] is None
        assert result["price"]["amount"] is None
        assert "get_payment_method" not in gateway.calls

    def test_cancel_updates_processor_then_row(self, service, gateway, store, active_record):
        result = service.cancel_subscription("u1")

        assert gateway.cancelled_subscriptions == ["sub_1"]
        assert result == {
            "subscription_id": "sub_1",
            "cancel_at_period_end": True,
            "current_period_end": "2026-11-01T00:00:00+00:00",
        }
        record = store.get_by_user_id("u1")
        assert record.cancel_at_period_end is True
        assert record.next_payment_date is None
        assert record.is_active is True

    def test_cancel_requires_active_subscription(self, service, gateway, store):
        store.insert(SubscriptionRecord(user_id="u1", customer_id="cus_1", subscription_id="sub_1", is_active=False))

        with pytest.raises(ValidationError, match="No active subscription to cancel"):
            service.cancel_subscription("u1")

        assert gateway.cancelled_subscriptions == []

    def test_cancel_survives_local_write_failure(self, gateway, active_record, store):
        flaky_store = MagicMock(wraps=store)
        flaky_store.update_by_user_id.side_effect = StorageError("Storage unavailable during update_subscription")
        service = SubscriptionQueryService(flaky_store, gateway)

        result = service.cancel_subscription("u1")

        assert result["cancel_at_period_end"] is True
        assert gateway.cancelled_subscriptions == ["sub_1"]

    def test_billing_history(self, service, gateway, active_record):
        gateway.invoices["cus_1"] = [{"invoice_id": "in_1", "amount_paid": 10.0}, {"invoice_id": "in_2", "amount_paid": 10.0}]

        result = service.get_billing_history("u1")

        assert result["total_invoices"] == 2
        assert [i["invoice_id"] for i in result["invoices"]] == ["in_1", "in_2"]

    def test_billing_history_without_customer(self, service, store):
        store.insert(SubscriptionRecord(user_id="u1"))

        with pytest.raises(NotFoundError):
            service.get_billing_history("u1")


class TestGetSubscriptionHandler:
    def test_returns_subscription(self, wired_services, user_event, active_record):
        from api.get_subscription import handler

        result = handler(user_event(), {})

        assert result["statusCode"] == 200
        body = json.loads(result["body"])
        assert body["message"] == "Subscription retrieved successfully"
        assert body["data"]["subscription_id"] == "sub_1"
        assert body["data"]["price"]["amount"] == 10.0

    def test_other_users_subscription_is_forbidden(self, wired_services, user_event, store):
        from api.get_subscription import handler

        store.insert(SubscriptionRecord(user_id="u2", customer_id="cus_2", is_active=True))

        result = handler(user_event(user_id="u2"), {})

        assert result["statusCode"] == 403
        assert json.loads(result["body"])["message"] == "Access denied: can only access own subscription"

    def test_missing_token_returns_401(self, wired_services, user_event):
        from api.get_subscription import handler

        result = handler(user_event(token=None), {})

        assert result["statusCode"] == 401

    def test_missing_user_id_returns_400(self, wired_services, user_event):
        from api.get_subscription import handler

        result = handler(user_event(user_id=None), {})

        assert result["statusCode"] == 400

    def test_no_row_returns_404(self, wired_services, user_event):
        from api.get_subscription import handler

        result = handler(user_event(), {})

        assert result["statusCode"] == 404

    def test_rejects_post(self, wired_services, user_event):
        from api.get_subscription import handler

        result = handler(user_event(method="POST"), {})

        assert result["statusCode"] == 405


class TestCancelSubscriptionHandler:
    def test_cancels_at_period_end(self, wired_services, user_event, active_record, gateway):
        from api.cancel_subscription import handler

        result = handler(user_event(method="DELETE"), {})

        assert result["statusCode"] == 200
        body = json.loads(result["body"])
        assert body["message"] == "Subscription will be cancelled at the end of the billing period"
        assert body["data"]["cancel_at_period_end"] is True
        assert gateway.cancelled_subscriptions == ["sub_1"]

    def test_cannot_cancel_for_other_user(self, wired_services, user_event, gateway):
        from api.cancel_subscription import handler

        result = handler(user_event(method="DELETE", user_id="u2"), {})

        assert result["statusCode"] == 403
        assert gateway.cancelled_subscriptions == []

    def test_inactive_subscription_returns_400(self, wired_services, user_event, store):
        from api.cancel_subscription import handler

        store.insert(SubscriptionRecord(user_id="u1", customer_id="cus_1"))

        result = handler(user_event(method="DELETE"), {})

        assert result["statusCode"] == 400

    def test_rejects_get(self, wired_services, user_event):
        from api.cancel_subscription import handler

        result = handler(user_event(method="GET"), {})

        assert result["statusCode"] == 405


class TestBillingHistoryHandler:
    def test_returns_paid_invoices(self, wired_services, user_event, active_record, gateway):
        from api.get_billing_history import handler

        gateway.invoices["cus_1"] = [{"invoice_id": "in_1", "plan_name": "Basic", "amount_paid": 10.0}]

        result = handler(user_event(), {})

        assert result["statusCode"] == 200
        body = json.loads(result["body"])
        assert body["data"]["total_invoices"] == 1
        assert body["data"]["invoices"][0]["plan_name"] == "Basic"

    def test_no_customer_returns_404(self, wired_services, user_event):
        from api.get_billing_history import handler

        result = handler(user_event(), {})

        assert result["statusCode"] == 404

    def test_invalid_token_returns_401(self, wired_services, user_event):
        from api.get_billing_history import handler

        result = handler(user_event(token="Bearer expired"), {})

        assert result["statusCode"] == 401


class TestUserDirectoryOutage:
    def test_directory_outage_returns_502(self, wired_services, user_event, monkeypatch):
        from api.get_subscription import handler
        from billing.user_directory import DirectoryUnavailableError

        outage = MagicMock()
        outage.verify_credential.side_effect = DirectoryUnavailableError("User directory unavailable")
        monkeypatch.setattr(wired_services, "_directory", outage)

        result = handler(user_event(), {})

        assert result["statusCode"] == 502

    def test_unconfigured_directory_returns_500(self, user_event, monkeypatch):
        from api.get_subscription import handler

        monkeypatch.setattr("billing.config.SUPABASE_URL", "")

        result = handler(user_event(), {})

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["message"] == "User directory not configured"
