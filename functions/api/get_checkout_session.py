"""
Get Checkout Session Endpoint - GET /checkout/{session_id}

Returns the status of a Stripe Checkout session so the frontend can confirm
the outcome after the redirect back from Checkout.
"""

import logging
import time

from billing.dependencies import get_checkout_service
from billing.errors import BillingError
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.request_utils import get_method, get_path_parameter
from billing.response_utils import custom_response, error_response, internal_error_response, method_not_allowed

logger = logging.getLogger(__name__)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    start_time = time.time()

    method = get_method(event)
    if method != "GET":
        response = method_not_allowed("GET")
    else:
        try:
            session = get_checkout_service().get_checkout_session(get_path_parameter(event, "session_id"))
            response = custom_response(200, "Checkout session retrieved successfully", session)
        except BillingError as e:
            logger.warning(f"Checkout session lookup failed: {e.message}")
            response = error_response(e)
        except Exception as e:
            logger.error(f"Unexpected error retrieving checkout session: {e}", exc_info=True)
            response = internal_error_response()

    log_api_request(logger, method, "/checkout/{session_id}", response["statusCode"], (time.time() - start_time) * 1000)
    return response
