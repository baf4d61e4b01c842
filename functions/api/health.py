"""
Health Check Endpoint - GET /health

Returns service status. No authentication required.
"""

import logging
import time
from datetime import datetime, timezone

from billing import config
from billing.logging_utils import configure_structured_logging, log_api_request, set_request_id
from billing.response_utils import custom_response

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def handler(event, context):
    """
    Lambda handler for health check.

    Returns:
        200 with status information
    """
    configure_structured_logging()
    start_time = time.time()

    # Set request ID for logging correlation
    set_request_id(event)

    response = custom_response(
        200,
        "Service is healthy",
        {
            "status": "healthy",
            "version": VERSION,
            "environment": config.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers={"Cache-Control": "no-cache"},
    )

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "GET", "/health", 200, latency_ms)

    return response
