"""
Service wiring.

Each collaborator is built once per Lambda execution environment on first
use and handed to the services through their constructors. Tests call
reset_services() or build the services directly with fakes.
"""

from . import config
from .checkout import CheckoutService
from .errors import BillingError
from .event_ledger import EventLedger
from .payment_gateway import StripePaymentGateway
from .reducer import EventReducer
from .subscription_store import SubscriptionStore
from .subscriptions import SubscriptionQueryService
from .user_directory import SupabaseUserDirectory
from .webhook import WebhookDispatcher

_store = None
_ledger = None
_gateway = None
_directory = None
_checkout_service = None
_webhook_dispatcher = None
_query_service = None


def get_store() -> SubscriptionStore:
    global _store
    if _store is None:
        _store = SubscriptionStore()
    return _store


def get_ledger() -> EventLedger:
    global _ledger
    if _ledger is None:
        _ledger = EventLedger()
    return _ledger


def get_gateway() -> StripePaymentGateway:
    global _gateway
    if _gateway is None:
        api_key = config.get_stripe_api_key()
        if not api_key:
            raise BillingError("Payment service not configured", code="configuration_error")
        _gateway = StripePaymentGateway(api_key)
    return _gateway


def get_directory() -> SupabaseUserDirectory:
    global _directory
    if _directory is None:
        anon_key = config.get_supabase_anon_key()
        if not config.SUPABASE_URL or not anon_key:
            raise BillingError("User directory not configured", code="configuration_error")
        _directory = SupabaseUserDirectory(config.SUPABASE_URL, anon_key)
    return _directory


def get_checkout_service() -> CheckoutService:
    global _checkout_service
    if _checkout_service is None:
        _checkout_service = CheckoutService(get_store(), get_gateway(), get_directory())
    return _checkout_service


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _webhook_dispatcher
    if _webhook_dispatcher is None:
        gateway = get_gateway()
        _webhook_dispatcher = WebhookDispatcher(
            gateway,
            get_ledger(),
            EventReducer(get_store(), gateway),
            config.get_stripe_webhook_secret,
        )
    return _webhook_dispatcher


def get_query_service() -> SubscriptionQueryService:
    global _query_service
    if _query_service is None:
        _query_service = SubscriptionQueryService(get_store(), get_gateway())
    return _query_service


def reset_services() -> None:
    """Drop every cached collaborator. Used in tests."""
    global _store, _ledger, _gateway, _directory
    global _checkout_service, _webhook_dispatcher, _query_service
    _store = None
    _ledger = None
    _gateway = None
    _directory = None
    _checkout_service = None
    _webhook_dispatcher = None
    _query_service = None
