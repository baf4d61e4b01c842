"""
Subscription queries and user-initiated cancellation.
"""

import logging

from .errors import BillingError, ForbiddenError, NotFoundError, ValidationError
from .models import UserIdentity
from .payment_gateway import PaymentGateway
from .subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def ensure_own_account(user: UserIdentity, requested_user_id: str) -> None:
    """Users may only read or change their own billing data."""
    if requested_user_id != user.user_id:
        logger.warning(f"User {user.user_id} attempted to access billing data of {requested_user_id}")
        raise ForbiddenError("Access denied: can only access own subscription")


class SubscriptionQueryService:
    def __init__(self, store: SubscriptionStore, gateway: PaymentGateway):
        self.store = store
        self.gateway = gateway

    def get_subscription(self, user_id: str) -> dict:
        record = self.store.get_by_user_id(user_id)
        if record is None:
            raise NotFoundError("No subscription found for this user")

        plan = record.plan_snapshot
        payment_method = None
        if record.subscription_id:
            try:
                payment_method = self.gateway.get_payment_method(record.subscription_id)
            except BillingError as e:
                logger.warning(f"Payment method lookup failed for subscription {record.subscription_id}: {e}")
                payment_method = {"error": e.message}

        return {
            "subscription_id": record.subscription_id,
            "product_id": plan.product_id if plan else None,
            "subscription_name": plan.product_name if plan else None,
            "price": {
                "price_id": record.price_id or (plan.price_id if plan else None),
                "amount": plan.amount / 100 if plan and plan.amount is not None else None,
                "currency": plan.currency if plan else None,
                "interval": plan.interval if plan else None,
            },
            "start_date": record.start_date,
            "end_date": record.end_date,
            "next_payment_date": record.next_payment_date,
            "cancel_at_period_end": record.cancel_at_period_end,
            "is_active": record.is_active,
            "payment_method": payment_method,
        }

    def cancel_subscription(self, user_id: str) -> dict:
        """
        Cancel at period end.

        The processor is updated first; the local row follows. If the local
        write fails the customer.subscription.updated webhook brings the row
        in line, so that failure is logged and not surfaced.
        """
        record = self.store.get_by_user_id(user_id)
        if record is None or not record.is_active or not record.subscription_id:
            raise ValidationError("No active subscription to cancel")

        if record.cancel_at_period_end:
            logger.info(f"Subscription {record.subscription_id} already cancels at period end")

        result = self.gateway.cancel_at_period_end(record.subscription_id)

        try:
            self.store.update_by_user_id(user_id, {"cancel_at_period_end": True, "next_payment_date": None})
        except BillingError as e:
            logger.error(
                f"Subscription {record.subscription_id} cancelled remotely but local update failed: {e}",
                extra={"user_id": user_id},
            )

        logger.info(f"User {user_id} cancelled subscription {record.subscription_id} at period end")
        return {
            "subscription_id": result["subscription_id"],
            "cancel_at_period_end": True,
            "current_period_end": result.get("current_period_end"),
        }

    def get_billing_history(self, user_id: str) -> dict:
        record = self.store.get_by_user_id(user_id)
        if record is None or not record.customer_id:
            raise NotFoundError("No billing customer found for this user")

        invoices = self.gateway.list_paid_invoices(record.customer_id)
        return {"total_invoices": len(invoices), "invoices": invoices}
