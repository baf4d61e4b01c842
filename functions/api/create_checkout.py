"""
Create Checkout Session Endpoint - POST /checkout

Provisions a Stripe customer for the authenticated user when needed and
returns a Checkout session for the requested price.
Requires a Supabase bearer token.
"""

import logging
import time

from billing.dependencies import get_checkout_service
from billing.errors import AuthorizationError, BillingError
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.models import CheckoutRequest
from billing.request_utils import get_header, get_method, parse_json_body
from billing.response_utils import custom_response, error_response, internal_error_response, method_not_allowed

logger = logging.getLogger(__name__)


def handler(event, context):
    """
    Lambda handler for POST /checkout.

    Request body:
    {
        "price_id": "price_...",
        "success_url": "https://...",
        "cancel_url": "https://...",
        "quantity": 1,
        "metadata": {}
    }

    Returns:
        201 with {session_id, checkout_url, status, customer_id, action}
    """
    configure_structured_logging()
    set_request_id(event)
    start_time = time.time()

    method = get_method(event)
    if method != "POST":
        response = method_not_allowed("POST")
    else:
        response = _create_checkout(event)

    log_api_request(logger, method, "/checkout", response["statusCode"], (time.time() - start_time) * 1000)
    return response


def _create_checkout(event: dict) -> dict:
    try:
        auth_token = get_header(event, "Authorization")
        if not auth_token:
            raise AuthorizationError()

        request = CheckoutRequest.from_body(parse_json_body(event))
        result = get_checkout_service().checkout(request, auth_token)
    except BillingError as e:
        log = logger.error if e.status_code >= 500 else logger.warning
        log(f"Checkout failed: {e.message}", extra={"error_code": e.code})
        return error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error creating checkout session: {e}", exc_info=True)
        return internal_error_response()

    return custom_response(201, "Checkout session created successfully", result.to_dict())
