"""
Get Subscription Endpoint - GET /subscription/{userId}

Returns the caller's subscription row with plan details and the card on file.
Requires a Supabase bearer token for the same user.
"""

import logging
import time

from billing.dependencies import get_directory, get_query_service
from billing.errors import BillingError, ValidationError
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.request_utils import get_header, get_method, get_path_parameter
from billing.response_utils import custom_response, error_response, internal_error_response, method_not_allowed
from billing.subscriptions import ensure_own_account
from billing.user_directory import authenticate_user

logger = logging.getLogger(__name__)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    start_time = time.time()
    user_id = None

    method = get_method(event)
    if method != "GET":
        response = method_not_allowed("GET")
    else:
        try:
            user = authenticate_user(get_directory(), get_header(event, "Authorization"))
            user_id = get_path_parameter(event, "userId")
            if not user_id:
                raise ValidationError("userId path parameter is required")
            ensure_own_account(user, user_id)

            subscription = get_query_service().get_subscription(user_id)
            response = custom_response(200, "Subscription retrieved successfully", subscription)
        except BillingError as e:
            logger.warning(f"Subscription lookup failed: {e.message}")
            response = error_response(e)
        except Exception as e:
            logger.error(f"Unexpected error retrieving subscription: {e}", exc_info=True)
            response = internal_error_response()

    log_api_request(
        logger, method, "/subscription/{userId}", response["statusCode"], (time.time() - start_time) * 1000, user_id
    )
    return response
