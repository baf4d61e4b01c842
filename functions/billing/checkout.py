"""
Provisioning saga for checkout.

checkout(request, token):
    authenticate -> provision customer -> find or create checkout session

Each step that leaves a remote or durable side effect hands back the
Compensation that undoes it. A failure anywhere runs the session
compensation first, then the provisioning compensation, and the original
error propagates.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .constants import ACTION_CREATED, ACTION_EXISTING, ACTION_UPDATED
from .errors import BillingError, NotFoundError, PaymentRejectedError, ValidationError
from .metrics import emit_checkout_metric
from .models import CheckoutRequest, CheckoutResult, CheckoutSession, SubscriptionRecord, UserIdentity
from .payment_gateway import PaymentGateway
from .saga import Compensation, Saga
from .subscription_store import SubscriptionStore
from .user_directory import UserDirectory, authenticate_user

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    customer_id: str
    action: str
    compensation: Compensation


@dataclass
class SessionResult:
    session: CheckoutSession
    compensation: Compensation


class CheckoutService:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        directory: UserDirectory,
    ):
        self.store = store
        self.gateway = gateway
        self.directory = directory

    def authenticate(self, auth_token: Optional[str]) -> UserIdentity:
        return authenticate_user(self.directory, auth_token)

    def provision(self, user: UserIdentity, price_id: str) -> ProvisionResult:
        """
        Make sure the user has exactly one billing customer.

        Returns:
            ProvisionResult with action 'existing' (nothing created),
            'updated' (customer attached to an existing row) or 'created'
            (customer and row created)
        """
        record = self.store.get_by_user_id(user.user_id)
        plan_snapshot = self.gateway.retrieve_plan_snapshot(price_id)

        if record is not None and record.customer_id:
            logger.info(f"User {user.user_id} already has customer {record.customer_id}")
            return ProvisionResult(record.customer_id, ACTION_EXISTING, Compensation.noop())

        compensation = Compensation()
        with Saga("provision") as saga:
            customer_id = self.gateway.create_customer(user)
            compensation.add(
                f"delete customer {customer_id}",
                lambda: self.gateway.delete_customer(customer_id),
            )
            saga.register(compensation)

            if record is not None:
                self.store.attach_customer(user.user_id, customer_id, plan_snapshot)
                compensation.add(
                    f"detach customer {customer_id} from user {user.user_id}",
                    lambda: self.store.detach_customer(user.user_id, customer_id),
                )
                action = ACTION_UPDATED
            else:
                self.store.insert(SubscriptionRecord(
                    user_id=user.user_id,
                    customer_id=customer_id,
                    price_id=plan_snapshot.price_id,
                    plan_snapshot=plan_snapshot,
                    is_active=False,
                ))
                compensation.add(
                    f"delete subscription row for user {user.user_id}",
                    lambda: self.store.delete(user.user_id),
                )
                action = ACTION_CREATED

        logger.info(f"Provisioned customer {customer_id} for user {user.user_id} ({action})")
        return ProvisionResult(customer_id, action, compensation)

    def create_checkout_session(
        self,
        request: CheckoutRequest,
        customer_id: str,
        check_existing: bool,
        user_id: str,
    ) -> SessionResult:
        if check_existing:
            session = self._find_open_session(customer_id, request.price_id)
            if session is not None:
                logger.info(f"Reusing open checkout session {session.id} for customer {customer_id}")
                return SessionResult(session, Compensation.noop())

        metadata = {**request.metadata, "user_id": user_id, "price_id": request.price_id}
        session = self.gateway.create_checkout_session(request, customer_id, metadata)
        logger.info(f"Created checkout session {session.id} for customer {customer_id}")

        compensation = Compensation()
        if session.status == "open":
            compensation.add(
                f"expire checkout session {session.id}",
                lambda: self.gateway.expire_checkout_session(session.id),
            )
        return SessionResult(session, compensation)

    def _find_open_session(self, customer_id: str, price_id: str) -> Optional[CheckoutSession]:
        try:
            sessions = self.gateway.list_open_checkout_sessions(customer_id)
        except BillingError as e:
            logger.warning(f"Could not list open sessions for customer {customer_id}, creating a new one: {e}")
            return None
        for session in sessions:
            if session.references_price(price_id):
                return session
        return None

    def checkout(self, request: CheckoutRequest, auth_token: Optional[str]) -> CheckoutResult:
        user = self.authenticate(auth_token)

        with Saga("checkout") as saga:
            provisioned = self.provision(user, request.price_id)
            saga.register(provisioned.compensation)

            # A customer created just now cannot have an open session yet
            created = self.create_checkout_session(
                request,
                provisioned.customer_id,
                check_existing=provisioned.action == ACTION_EXISTING,
                user_id=user.user_id,
            )
            saga.register(created.compensation)

            result = CheckoutResult(
                session_id=created.session.id,
                checkout_url=created.session.url,
                status=created.session.status,
                customer_id=provisioned.customer_id,
                action=provisioned.action,
            )

        emit_checkout_metric(provisioned.action)
        return result

    def get_checkout_session(self, session_id: Optional[str]) -> dict:
        if not session_id:
            raise ValidationError("Session ID is required")
        try:
            session = self.gateway.retrieve_checkout_session(session_id)
        except PaymentRejectedError as e:
            raise NotFoundError("Checkout session not found") from e
        return session.to_dict()
