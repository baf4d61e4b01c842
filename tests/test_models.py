"""
Tests for billing data model helpers.
"""

import pytest
from freezegun import freeze_time

from billing.errors import ValidationError
from billing.models import (
    CheckoutRequest,
    CheckoutSession,
    PlanSnapshot,
    SubscriptionRecord,
    UserIdentity,
    now_iso,
    timestamp_to_iso,
)


class TestTimestampToIso:
    def test_converts_epoch_seconds(self):
        assert timestamp_to_iso(1700000000) == "2023-11-14T22:13:20+00:00"

    def test_accepts_numeric_strings(self):
        assert timestamp_to_iso("1700000000") == "2023-11-14T22:13:20+00:00"

    @pytest.mark.parametrize("value", [None, 0, "0", -5, "not-a-number", True, False, {}])
    def test_unknown_values_map_to_none(self, value):
        """Zero and missing timestamps must never become 1970-01-01."""
        assert timestamp_to_iso(value) is None

    def test_out_of_range_maps_to_none(self):
        assert timestamp_to_iso(10**20) is None


@freeze_time("2026-10-18 12:00:00")
def test_now_iso_is_utc():
    assert now_iso() == "2026-10-18T12:00:00+00:00"


class TestSubscriptionRecord:
    def test_item_round_trip_keeps_plan_snapshot(self):
        record = SubscriptionRecord(
            user_id="u1",
            customer_id="cus_1",
            plan_snapshot=PlanSnapshot("price_123", 1000, "usd", "month", 1, "prod_1", "Basic"),
            is_active=True,
        )

        restored = SubscriptionRecord.from_item(record.to_item())

        assert restored == record

    def test_from_item_defaults_missing_fields(self):
        record = SubscriptionRecord.from_item({"user_id": "u1"})

        assert record.customer_id is None
        assert record.plan_snapshot is None
        assert record.is_active is False
        assert record.cancel_at_period_end is False

    def test_from_item_converts_dynamodb_decimals(self):
        from decimal import Decimal

        record = SubscriptionRecord.from_item({
            "user_id": "u1",
            "last_event_at": Decimal("1790000000"),
            "plan_snapshot": {"price_id": "price_123", "amount": Decimal("1000"), "interval_count": Decimal("1")},
        })

        assert record.last_event_at == 1790000000
        assert record.plan_snapshot.amount == 1000
        assert isinstance(record.plan_snapshot.amount, int)


class TestUserIdentity:
    def test_display_name_prefers_full_name(self):
        assert UserIdentity("u1", "a@example.com", "Ada").display_name == "Ada"

    def test_display_name_falls_back_to_email(self):
        assert UserIdentity("u1", "a@example.com").display_name == "a@example.com"


class TestCheckoutRequest:
    def test_valid_body(self):
        request = CheckoutRequest.from_body({
            "price_id": "price_123",
            "success_url": "https://app.example.com/success",
            "cancel_url": "https://app.example.com/cancel",
            "metadata": {"campaign": "fall", "seats": 3},
        })

        assert request.price_id == "price_123"
        assert request.quantity == 1
        assert request.metadata == {"campaign": "fall", "seats": "3"}

    def test_reports_every_problem(self):
        with pytest.raises(ValidationError) as exc_info:
            CheckoutRequest.from_body({"quantity": 0, "metadata": "x"})

        errors = exc_info.value.errors
        assert "price_id is required" in errors
        assert "success_url is required" in errors
        assert "cancel_url is required" in errors
        assert "quantity must be a positive integer" in errors
        assert "metadata must be an object" in errors
        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize("quantity", [-1, 1.5, "2", True])
    def test_rejects_invalid_quantity(self, quantity):
        with pytest.raises(ValidationError):
            CheckoutRequest.from_body({
                "price_id": "price_123",
                "success_url": "https://a",
                "cancel_url": "https://b",
                "quantity": quantity,
            })


class TestCheckoutSession:
    def test_references_price_by_line_item(self):
        session = CheckoutSession("cs_1", None, "open", price_ids=["price_123"])
        assert session.references_price("price_123")
        assert not session.references_price("price_456")

    def test_references_price_by_metadata(self):
        session = CheckoutSession("cs_1", None, "open", metadata={"price_id": "price_456"})
        assert session.references_price("price_456")
