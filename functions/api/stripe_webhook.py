"""
Stripe Webhook Handler - POST /webhooks/stripe

Handles Stripe events for subscription management:
- customer.subscription.created: Link or create the user's subscription row
- customer.subscription.updated: Plan, status and period changes
- customer.subscription.deleted: Deactivate
- invoice.payment_succeeded: Activate and move next_payment_date
- invoice.payment_failed: Logged; the processor retries on its own schedule

Other event types are acknowledged and ignored.
"""

import logging
import time

from billing.dependencies import get_webhook_dispatcher
from billing.errors import BillingError
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.request_utils import get_header, get_method, get_raw_body
from billing.response_utils import error_response, internal_error_response, method_not_allowed, result_response

logger = logging.getLogger(__name__)


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Returns 5xx only when a redelivery may succeed (storage or Stripe
    unavailable); everything else is acknowledged with 200 or rejected with
    400 so Stripe stops retrying.
    """
    configure_structured_logging()
    set_request_id(event)
    start_time = time.time()

    method = get_method(event)
    if method != "POST":
        response = method_not_allowed("POST")
    else:
        try:
            result = get_webhook_dispatcher().handle(
                get_raw_body(event),
                get_header(event, "Stripe-Signature"),
            )
            response = result_response(result)
        except BillingError as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(f"Webhook handling failed: {e.message}", extra={"error_code": e.code})
            response = error_response(e)
        except Exception as e:
            logger.error(f"Unexpected webhook error: {e}", exc_info=True)
            response = internal_error_response()

    log_api_request(logger, method, "/webhooks/stripe", response["statusCode"], (time.time() - start_time) * 1000)
    return response
