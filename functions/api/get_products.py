"""
Products Endpoint - GET /products

Lists active Stripe products with their active prices. No authentication.
"""

import logging
import time

from billing.dependencies import get_gateway
from billing.errors import BillingError
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.request_utils import get_method
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
            products = get_gateway().list_products()
            response = custom_response(200, "Products retrieved successfully", products)
        except BillingError as e:
            logger.error(f"Product listing failed: {e.message}")
            response = error_response(e)
        except Exception as e:
            logger.error(f"Unexpected error listing products: {e}", exc_info=True)
            response = internal_error_response()

    log_api_request(logger, method, "/products", response["statusCode"], (time.time() - start_time) * 1000)
    return response
