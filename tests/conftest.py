"""
Shared pytest fixtures for the billing function tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from unittest.mock import MagicMock, patch

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

SUBSCRIPTIONS_TABLE = "billing-subscriptions"
PROCESSED_EVENTS_TABLE = "billing-processed-events"
WEBHOOK_SECRET = "whsec_test_secret"


def pytest_configure(config):
    """Set AWS credentials and billing configuration before test collection.

    billing.config reads the environment at import time, so this must run
    before any test module imports it.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    os.environ.setdefault("SUBSCRIPTIONS_TABLE", SUBSCRIPTIONS_TABLE)
    os.environ.setdefault("PROCESSED_EVENTS_TABLE", PROCESSED_EVENTS_TABLE)
    os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
    os.environ.setdefault("SUPABASE_ANON_KEY", "anon-test-key")
    os.environ.setdefault("STRIPE_API_KEY", "sk_test_123")
    os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_billing_state():
    """Reset cached clients, services, secrets and the duplicate cache around each test."""
    from billing.aws_clients import reset_clients
    from billing.config import clear_secret_cache
    from billing.dependencies import reset_services
    from billing.event_ledger import clear_recent_events

    def _reset():
        reset_clients()
        reset_services()
        clear_secret_cache()
        clear_recent_events()

    _reset()
    yield
    _reset()


@pytest.fixture(autouse=True)
def mock_cloudwatch():
    """Metrics go to a MagicMock instead of CloudWatch."""
    client = MagicMock()
    with patch("billing.metrics.get_cloudwatch", return_value=client):
        yield client


def create_dynamodb_tables(dynamodb):
    """Create the subscription and processed-event tables.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName=SUBSCRIPTIONS_TABLE,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName=PROCESSED_EVENTS_TABLE,
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def store(mock_dynamodb):
    from billing.subscription_store import SubscriptionStore

    return SubscriptionStore(
        SUBSCRIPTIONS_TABLE,
        dynamodb=mock_dynamodb,
        dynamodb_client=boto3.client("dynamodb", region_name="us-east-1"),
    )


@pytest.fixture
def ledger(mock_dynamodb):
    from billing.event_ledger import EventLedger

    return EventLedger(PROCESSED_EVENTS_TABLE, dynamodb=mock_dynamodb, retention_days=0)


# ----------------------------------------------------------------------
# In-memory remote services
# ----------------------------------------------------------------------


class FakePaymentGateway:
    """In-memory PaymentGateway. Set fail_on[<method>] to make a call raise."""

    def __init__(self):
        from billing.models import PlanSnapshot

        self.prices = {
            "price_123": PlanSnapshot("price_123", 1000, "usd", "month", 1, "prod_basic", "Basic"),
            "price_456": PlanSnapshot("price_456", 10000, "usd", "year", 1, "prod_pro", "Pro"),
        }
        self.customers = {}
        self.deleted_customers = []
        self.created_sessions = []
        self.open_sessions = {}
        self.expired_sessions = []
        self.cancelled_subscriptions = []
        self.payment_methods = {}
        self.invoices = {}
        self.products = []
        self.fail_on = {}
        self.calls = []
        self._next_id = 0

    def _call(self, name):
        self.calls.append(name)
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def _new_id(self, prefix):
        self._next_id += 1
        return f"{prefix}_{self._next_id}"

    def create_customer(self, user):
        self._call("create_customer")
        customer_id = self._new_id("cus")
        self.customers[customer_id] = user
        return customer_id

    def delete_customer(self, customer_id):
        self._call("delete_customer")
        self.customers.pop(customer_id, None)
        self.deleted_customers.append(customer_id)

    def retrieve_plan_snapshot(self, price_id):
        from billing.errors import PlanResolutionError

        self._call("retrieve_plan_snapshot")
        if price_id not in self.prices:
            raise PlanResolutionError(price_id)
        return self.prices[price_id]

    def create_checkout_session(self, request, customer_id, metadata):
        from billing.models import CheckoutSession

        self._call("create_checkout_session")
        session_id = self._new_id("cs_test")
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
            status="open",
            price_ids=[request.price_id],
            metadata=dict(metadata),
        )
        self.created_sessions.append((request, customer_id, metadata))
        self.open_sessions.setdefault(customer_id, []).append(session)
        return session

    def list_open_checkout_sessions(self, customer_id):
        self._call("list_open_checkout_sessions")
        return [s for s in self.open_sessions.get(customer_id, []) if s.status == "open"]

    def expire_checkout_session(self, session_id):
        self._call("expire_checkout_session")
        for sessions in self.open_sessions.values():
            for session in sessions:
                if session.id == session_id:
                    session.status = "expired"
        self.expired_sessions.append(session_id)

    def retrieve_checkout_session(self, session_id):
        from billing.errors import PaymentRejectedError

        self._call("retrieve_checkout_session")
        for sessions in self.open_sessions.values():
            for session in sessions:
                if session.id == session_id:
                    return session
        raise PaymentRejectedError("No such checkout session")

    def verify_webhook_signature(self, body, signature, secret):
        from billing.payment_gateway import StripePaymentGateway

        self._call("verify_webhook_signature")
        return StripePaymentGateway("sk_test_123").verify_webhook_signature(body, signature, secret)

    def cancel_at_period_end(self, subscription_id):
        self._call("cancel_at_period_end")
        self.cancelled_subscriptions.append(subscription_id)
        return {
            "subscription_id": subscription_id,
            "cancel_at_period_end": True,
            "current_period_end": "2026-11-01T00:00:00+00:00",
        }

    def get_payment_method(self, subscription_id):
        self._call("get_payment_method")
        return self.payment_methods.get(subscription_id, {"error": "No payment method found"})

    def list_paid_invoices(self, customer_id):
        self._call("list_paid_invoices")
        return list(self.invoices.get(customer_id, []))

    def list_products(self):
        self._call("list_products")
        return list(self.products)


class FakeUserDirectory:
    def __init__(self):
        self.users = {}

    def add(self, token, user):
        self.users[token] = user

    def verify_credential(self, token):
        return self.users.get(token)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def test_user():
    from billing.models import UserIdentity

    return UserIdentity(user_id="u1", email="ada@example.com", full_name="Ada Lovelace")


@pytest.fixture
def directory(test_user):
    directory = FakeUserDirectory()
    directory.add("valid-token", test_user)
    return directory


@pytest.fixture
def wired_services(monkeypatch, store, ledger, gateway, directory):
    """Point billing.dependencies at moto-backed stores and the in-memory fakes."""
    import billing.dependencies as deps

    monkeypatch.setattr(deps, "_store", store)
    monkeypatch.setattr(deps, "_ledger", ledger)
    monkeypatch.setattr(deps, "_gateway", gateway)
    monkeypatch.setattr(deps, "_directory", directory)
    return deps


# ----------------------------------------------------------------------
# API Gateway and webhook helpers
# ----------------------------------------------------------------------


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {"requestId": "test-request-id"},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type, data_object, event_id="evt_test_1", created=None, previous_attributes=None) -> dict:
    data = {"object": data_object}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": data,
    }


@pytest.fixture
def signed_webhook():
    """Return (body, signature) for an event dict."""

    def _signed(event: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event)
        return body, sign_payload(body, secret)

    return _signed


@pytest.fixture
def subscription_object():
    """A customer.subscription object as Stripe sends it."""

    def _subscription(
        customer="cus_1",
        subscription_id="sub_1",
        status="active",
        price_id="price_123",
        period_start=1790000000,
        period_end=1792592000,
        cancel_at_period_end=False,
        metadata=None,
        canceled_at=None,
    ):
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "canceled_at": canceled_at,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "metadata": metadata or {},
            "items": {
                "object": "list",
                "data": [{"id": "si_1", "price": {"id": price_id}, "quantity": 1}],
            },
        }

    return _subscription
