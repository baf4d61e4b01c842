"""
Cancel Subscription Endpoint - DELETE /subscription/{userId}

Cancels the caller's subscription at the end of the current period. The
customer.subscription.updated webhook confirms the change later.
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
    if method != "DELETE":
        response = method_not_allowed("DELETE")
    else:
        try:
            user = authenticate_user(get_directory(), get_header(event, "Authorization"))
            user_id = get_path_parameter(event, "userId")
            if not user_id:
                raise ValidationError("userId path parameter is required")
            ensure_own_account(user, user_id)

            result = get_query_service().cancel_subscription(user_id)
            response = custom_response(200, "Subscription will be cancelled at the end of the billing period", result)
        except BillingError as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(f"Subscription cancellation failed: {e.message}", extra={"error_code": e.code})
            response = error_response(e)
        except Exception as e:
            logger.error(f"Unexpected error cancelling subscription: {e}", exc_info=True)
            response = internal_error_response()

    log_api_request(
        logger, method, "/subscription/{userId}", response["statusCode"], (time.time() - start_time) * 1000, user_id
    )
    return response
