"""
Response utilities for Lambda handlers.

Every billing endpoint answers with the same envelope:
{"statusCode": <int>, "message": <str>, "data": <optional>}.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from . import config
from .errors import BillingError
from .models import HttpResult


def get_cors_headers() -> Dict[str, str]:
    """CORS headers for the configured origin."""
    return {
        "Access-Control-Allow-Origin": config.ALLOWED_ORIGIN,
        "Access-Control-Allow-Headers": "Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token",
        "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    }


def json_default(obj: Any) -> Any:
    """JSON serializer for Decimal values from DynamoDB and datetimes."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def custom_response(
    status_code: int,
    message: str,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> dict:
    """
    Create a response in the billing envelope.

    Args:
        status_code: HTTP status code
        message: Human-readable message
        data: Optional payload, omitted from the body when None
        headers: Additional response headers

    Returns:
        Lambda response dict
    """
    response_headers = {"Content-Type": "application/json"}
    response_headers.update(get_cors_headers())
    if headers:
        response_headers.update(headers)

    body = {"statusCode": status_code, "message": message}
    if data is not None:
        body["data"] = data

    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=json_default),
    }


def result_response(result: HttpResult) -> dict:
    """Translate a core HttpResult into the transport envelope."""
    return custom_response(result.status_code, result.message, result.data)


def error_response(error: BillingError) -> dict:
    """Translate a BillingError into the transport envelope."""
    return custom_response(error.status_code, error.message, error.details or None)


def method_not_allowed(allowed: str) -> dict:
    return custom_response(405, f"Method Not Allowed. Use {allowed}.", headers={"Allow": allowed})


def internal_error_response() -> dict:
    return custom_response(500, "Internal server error")
